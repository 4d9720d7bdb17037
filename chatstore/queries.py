"""
Read-side operations over the chat store.

Every list operation shares the same paging rules (see
``utils.normalize_page``): a non-positive limit falls back to the default
page size, a negative page becomes 0, and offset = page * limit.

Single-entity lookups raise NotFoundError when nothing matches. Database
failures propagate unchanged as SQLAlchemyError, so callers can tell "no
data" from "store unavailable".
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, false, func, or_, select
from sqlalchemy.orm import Query, Session, aliased

from chatstore.errors import NotFoundError
from chatstore.models import GROUP_JID_SUFFIX, Chat, Message
from chatstore.schemas import ChatView, Contact, MessageContext, MessageView
from chatstore.storage import Store
from chatstore.utils import direct_jid, jid_local_part, like_pattern, normalize_page

logger = logging.getLogger(__name__)

CONTACT_SEARCH_LIMIT = 50
RECENT_MESSAGES_DEFAULT = 10
SORT_BY_NAME = "name"
SORT_BY_LAST_ACTIVE = "last_active"

_ESCAPE = "\\"


def _ceil_to_second(value: datetime) -> datetime:
    """
    Stored timestamps have whole-second precision, so a lower bound with a
    fractional part rounds up, otherwise truncation would admit earlier
    messages.
    """
    if value.microsecond:
        return value.replace(microsecond=0) + timedelta(seconds=1)
    return value


def _message_view(message: Message, chat_name: Optional[str]) -> MessageView:
    return MessageView(
        id=message.id,
        chat_jid=message.chat_jid,
        chat_name=chat_name,
        sender=message.sender,
        content=message.content,
        timestamp=message.timestamp,
        is_from_me=message.is_from_me,
    )


def _chat_view(chat: Chat, last: Optional[Message]) -> ChatView:
    return ChatView(
        jid=chat.jid,
        name=chat.name,
        last_message_time=chat.last_message_time,
        last_message=last.content if last is not None else None,
        last_sender=last.sender if last is not None else None,
        last_is_from_me=last.is_from_me if last is not None else None,
        is_group=chat.is_group,
    )


def _with_last_message(query: Query) -> Query:
    """
    Outer-join each chat to the message whose timestamp equals the chat's
    last_message_time. This is an equality match, not a max(): a watermark
    that matches no stored message leaves the Message side empty. Ties pick
    the smallest id so each chat yields exactly one row.
    """
    candidate = aliased(Message)
    last_id = (
        select(func.min(candidate.id))
        .where(
            candidate.chat_jid == Chat.jid,
            candidate.timestamp == Chat.last_message_time,
        )
        .correlate(Chat)
        .scalar_subquery()
    )
    return query.outerjoin(
        Message,
        and_(Message.chat_jid == Chat.jid, Message.id == last_id),
    )


class QueryEngine:
    """Read-only queries against a Store."""

    def __init__(self, store: Store):
        self.store = store

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    @staticmethod
    def _messages(db: Session) -> Query:
        return db.query(Message, Chat.name).join(Chat, Message.chat_jid == Chat.jid)

    def list_messages(
        self,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        sender: Optional[str] = None,
        chat_jid: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 20,
        page: int = 0,
        include_context: bool = False,
        context_before: int = 1,
        context_after: int = 1,
    ) -> list[MessageView]:
        """
        Messages matching every given filter, newest first.

        Args:
            after: Only messages at or after this time
            before: Only messages at or before this time
            sender: Exact sender match
            chat_jid: Exact chat match
            query: Case-insensitive substring of the content
            limit: Page size (<= 0 means 20)
            page: Zero-based page number
            include_context: Expand each match into its context window
            context_before: Earlier messages per match when expanding
            context_after: Later messages per match when expanding

        Returns:
            The page of matches. With ``include_context`` each match is
            replaced by ``before + [match] + after`` and the windows are
            concatenated in match order; overlapping windows are neither
            merged nor re-sorted.
        """
        limit, page, offset = normalize_page(limit, page)
        logger.info(
            f"Listing messages: chat={chat_jid}, sender={sender}, query={query}, "
            f"range=[{after}, {before}], limit={limit}, page={page}"
        )

        with self.store.session() as db:
            q = self._messages(db)
            if after is not None:
                q = q.filter(Message.timestamp >= _ceil_to_second(after))
            if before is not None:
                q = q.filter(Message.timestamp <= before)
            if sender:
                q = q.filter(Message.sender == sender)
            if chat_jid:
                q = q.filter(Message.chat_jid == chat_jid)
            if query:
                q = q.filter(Message.content.ilike(like_pattern(query), escape=_ESCAPE))

            rows = q.order_by(Message.timestamp.desc()).offset(offset).limit(limit).all()
            matches = [_message_view(message, name) for message, name in rows]

            if not include_context or not matches:
                logger.debug(f"Retrieved {len(matches)} messages")
                return matches

            expanded = []
            for match in matches:
                context = self._context(db, match, context_before, context_after)
                expanded.extend(context.before)
                expanded.append(context.message)
                expanded.extend(context.after)
            logger.debug(f"Retrieved {len(matches)} messages, {len(expanded)} with context")
            return expanded

    def list_recent_messages(self, limit: int = RECENT_MESSAGES_DEFAULT) -> list[MessageView]:
        """Latest messages across all chats."""
        if limit <= 0:
            limit = RECENT_MESSAGES_DEFAULT
        with self.store.session() as db:
            rows = self._messages(db).order_by(Message.timestamp.desc()).limit(limit).all()
            return [_message_view(message, name) for message, name in rows]

    def _neighbours(self, db: Session, target: MessageView, count: int, earlier: bool) -> list[MessageView]:
        if count <= 0:
            return []
        q = self._messages(db).filter(Message.chat_jid == target.chat_jid)
        if earlier:
            q = q.filter(Message.timestamp < target.timestamp).order_by(Message.timestamp.desc())
        else:
            q = q.filter(Message.timestamp > target.timestamp).order_by(Message.timestamp.asc())
        views = [_message_view(message, name) for message, name in q.limit(count).all()]
        if earlier:
            # fetched newest-first to take the closest ones; hand back ascending
            views.reverse()
        return views

    def _context(self, db: Session, target: MessageView, before: int, after: int) -> MessageContext:
        return MessageContext(
            message=target,
            before=self._neighbours(db, target, before, earlier=True),
            after=self._neighbours(db, target, after, earlier=False),
        )

    def get_message_context(self, message_id: str, before: int = 5, after: int = 5) -> MessageContext:
        """
        A message plus up to ``before`` earlier and ``after`` later messages
        from the same chat, both ascending by time.

        The message is looked up by id alone; if the id exists in several
        chats the first stored match is used.

        Raises:
            NotFoundError: no message has this id
        """
        logger.info(f"Getting context for message {message_id}: before={before}, after={after}")
        with self.store.session() as db:
            row = self._messages(db).filter(Message.id == message_id).first()
            if row is None:
                raise NotFoundError("message", message_id)
            return self._context(db, _message_view(*row), before, after)

    # -------------------------------------------------------------------------
    # Chats
    # -------------------------------------------------------------------------

    def list_chats(
        self,
        query: Optional[str] = None,
        limit: int = 20,
        page: int = 0,
        include_last_message: bool = True,
        sort_by: str = SORT_BY_LAST_ACTIVE,
    ) -> list[ChatView]:
        """
        Chats whose name or jid contains ``query`` (case-insensitive).

        ``sort_by="name"`` orders alphabetically; anything else orders by
        last activity, newest first, chats without activity last.
        """
        limit, page, offset = normalize_page(limit, page)
        logger.info(f"Listing chats: query={query}, sort_by={sort_by}, limit={limit}, page={page}")

        with self.store.session() as db:
            if include_last_message:
                q = _with_last_message(db.query(Chat, Message))
            else:
                q = db.query(Chat)

            if query:
                pattern = like_pattern(query)
                q = q.filter(or_(
                    Chat.name.ilike(pattern, escape=_ESCAPE),
                    Chat.jid.ilike(pattern, escape=_ESCAPE),
                ))

            if sort_by == SORT_BY_NAME:
                q = q.order_by(Chat.name, Chat.jid)
            else:
                q = q.order_by(Chat.last_message_time.desc().nulls_last())

            rows = q.offset(offset).limit(limit).all()
            if include_last_message:
                return [_chat_view(chat, last) for chat, last in rows]
            return [_chat_view(chat, None) for chat in rows]

    def get_chat(self, jid: str, include_last_message: bool = True) -> ChatView:
        """
        Raises:
            NotFoundError: no chat has this jid
        """
        with self.store.session() as db:
            if include_last_message:
                row = _with_last_message(db.query(Chat, Message)).filter(Chat.jid == jid).first()
                view = _chat_view(*row) if row is not None else None
            else:
                chat = db.get(Chat, jid)
                view = _chat_view(chat, None) if chat is not None else None
        if view is None:
            raise NotFoundError("chat", jid)
        return view

    def get_direct_chat_by_contact(self, phone_number: str) -> ChatView:
        """The direct chat with a phone number (a full JID is accepted too)."""
        return self.get_chat(direct_jid(phone_number), include_last_message=True)

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def search_contacts(self, query: str) -> list[Contact]:
        """
        Direct (non-group) chats whose name or jid contains ``query``,
        ordered by name then jid, at most 50.
        """
        pattern = like_pattern(query)
        logger.info(f"Searching contacts: query={query}")
        with self.store.session() as db:
            rows = (
                db.query(Chat.jid, Chat.name)
                .filter(
                    or_(
                        Chat.name.ilike(pattern, escape=_ESCAPE),
                        Chat.jid.ilike(pattern, escape=_ESCAPE),
                    ),
                    ~Chat.jid.like(f"%{GROUP_JID_SUFFIX}"),
                )
                .distinct()
                .order_by(Chat.name, Chat.jid)
                .limit(CONTACT_SEARCH_LIMIT)
                .all()
            )
        return [
            Contact(phone_number=jid_local_part(jid), name=name, jid=jid)
            for jid, name in rows
        ]

    def _sender_matches(self, phone_number: str):
        # a jid without a local part identifies no sender
        if not phone_number:
            return false()
        return or_(
            Message.sender == phone_number,
            Message.sender.like(like_pattern(phone_number), escape=_ESCAPE),
        )

    def get_contact_chats(self, jid: str, limit: int = 20, page: int = 0) -> list[ChatView]:
        """
        Chats involving a contact: the chat with that jid, plus every chat
        where a message sender matches the jid's phone number. Each chat
        appears once, most recently active first.
        """
        limit, page, offset = normalize_page(limit, page)
        phone_number = jid_local_part(jid)
        logger.info(f"Listing chats for contact {jid}: limit={limit}, page={page}")

        with self.store.session() as db:
            sender_chats = select(Message.chat_jid).where(self._sender_matches(phone_number))
            rows = (
                _with_last_message(db.query(Chat, Message))
                .filter(or_(Chat.jid == jid, Chat.jid.in_(sender_chats)))
                .order_by(Chat.last_message_time.desc().nulls_last())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_chat_view(chat, last) for chat, last in rows]

    def get_last_interaction(self, jid: str) -> MessageView:
        """
        Most recent message in the contact's chat or sent by the contact.

        Raises:
            NotFoundError: no message involves this contact
        """
        phone_number = jid_local_part(jid)
        with self.store.session() as db:
            row = (
                self._messages(db)
                .filter(or_(Message.chat_jid == jid, self._sender_matches(phone_number)))
                .order_by(Message.timestamp.desc())
                .first()
            )
            if row is None:
                raise NotFoundError("interaction", jid)
            return _message_view(*row)
