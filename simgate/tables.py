# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import datetime
import logging
from typing import Any, Mapping, Optional, Union

import asyncpg

from simgate import utils
from simgate.pghelp import Canned, PGExpressions, PGInterface

DATABASE_URL = utils.get_secret("DATABASE_URL")
Database = Union[str, dict[str, Canned]]

ConversationPGExpressions = PGExpressions(
    table="conversations",
    create_table="CREATE TABLE IF NOT EXISTS {self.table} \
        (id SERIAL PRIMARY KEY, \
        sender_phone CHARACTER VARYING(32) NOT NULL, \
        recipient_phone CHARACTER VARYING(32) NOT NULL, \
        bank_id CHARACTER VARYING(32), \
        sim_port CHARACTER VARYING(16), \
        chat_channel CHARACTER VARYING(64), \
        thread_ref CHARACTER VARYING(64), \
        iccid CHARACTER VARYING(32), \
        created_at TIMESTAMPTZ DEFAULT now(), \
        last_message_at TIMESTAMPTZ DEFAULT now(), \
        UNIQUE (sender_phone, recipient_phone));",
    create_thread_index="CREATE INDEX IF NOT EXISTS conversations_thread_ref_idx \
        ON {self.table} (thread_ref);",
    get_conversation="SELECT * FROM {self.table} \
        WHERE sender_phone=$1 AND recipient_phone=$2;",
    # no-op when the pair exists, the caller re-reads either way
    insert_conversation="INSERT INTO {self.table} \
        (sender_phone, recipient_phone, bank_id, sim_port, iccid) \
        VALUES ($1, $2, $3, $4, $5) \
        ON CONFLICT (sender_phone, recipient_phone) DO NOTHING;",
    get_by_id="SELECT * FROM {self.table} WHERE id=$1;",
    get_by_thread="SELECT * FROM {self.table} WHERE thread_ref=$1;",
    get_latest_by_sender="SELECT * FROM {self.table} WHERE sender_phone=$1 \
        ORDER BY last_message_at DESC LIMIT 1;",
    set_thread_ref="UPDATE {self.table} SET thread_ref=$2, chat_channel=$3 WHERE id=$1;",
    touch="UPDATE {self.table} SET last_message_at=now() WHERE id=$1;",
    set_iccid="UPDATE {self.table} SET iccid=$2 WHERE id=$1;",
    count="SELECT COUNT(*) AS count FROM {self.table};",
)

MessagePGExpressions = PGExpressions(
    table="messages",
    create_table="CREATE TABLE IF NOT EXISTS {self.table} \
        (id SERIAL PRIMARY KEY, \
        conversation_id INTEGER REFERENCES conversations(id), \
        direction CHARACTER VARYING(8) CHECK (direction IN ('inbound', 'outbound')), \
        content TEXT, \
        sent_by TEXT, \
        status CHARACTER VARYING(16), \
        created_at TIMESTAMPTZ DEFAULT now());",
    create_conversation_index="CREATE INDEX IF NOT EXISTS messages_conversation_idx \
        ON {self.table} (conversation_id);",
    insert_message="INSERT INTO {self.table} \
        (conversation_id, direction, content, sent_by, status) \
        VALUES ($1, $2, $3, $4, $5) RETURNING id;",
    get_messages="SELECT * FROM {self.table} WHERE conversation_id=$1 \
        ORDER BY created_at DESC, id DESC LIMIT $2;",
    count_recent="SELECT COUNT(*) AS count FROM {self.table} \
        WHERE created_at > now() - interval '24 hours';",
)

BlockedPGExpressions = PGExpressions(
    table="blocked_numbers",
    create_table="CREATE TABLE IF NOT EXISTS {self.table} \
        (phone_number CHARACTER VARYING(32) PRIMARY KEY, \
        blocked_by TEXT, \
        reason TEXT, \
        created_at TIMESTAMPTZ DEFAULT now());",
    block="INSERT INTO {self.table} (phone_number, blocked_by, reason) \
        VALUES ($1, $2, $3) ON CONFLICT (phone_number) DO UPDATE SET \
        blocked_by=$2, reason=$3, created_at=now();",
    unblock="DELETE FROM {self.table} WHERE phone_number=$1 RETURNING phone_number;",
    is_blocked="SELECT phone_number FROM {self.table} WHERE phone_number=$1;",
    list_blocked="SELECT * FROM {self.table} ORDER BY created_at DESC;",
    count="SELECT COUNT(*) AS count FROM {self.table};",
)


class ConversationManager(PGInterface):
    def __init__(
        self,
        queries: PGExpressions = ConversationPGExpressions,
        database: Database = DATABASE_URL,
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        super().__init__(queries, database, pool)


class MessageManager(PGInterface):
    def __init__(
        self,
        queries: PGExpressions = MessagePGExpressions,
        database: Database = DATABASE_URL,
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        super().__init__(queries, database, pool)


class BlockedManager(PGInterface):
    def __init__(
        self,
        queries: PGExpressions = BlockedPGExpressions,
        database: Database = DATABASE_URL,
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        super().__init__(queries, database, pool)


def first(rows: Optional[list]) -> Optional[Mapping[str, Any]]:
    return rows[0] if rows else None


def jsonable(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    return value


class Conversation:
    def __init__(self, record: Mapping[str, Any]) -> None:
        row = dict(record)
        self.id: int = row["id"]
        self.sender_phone: str = row["sender_phone"]
        self.recipient_phone: str = row["recipient_phone"]
        self.bank_id: Optional[str] = row.get("bank_id")
        self.sim_port: Optional[str] = row.get("sim_port")
        self.chat_channel: Optional[str] = row.get("chat_channel")
        self.thread_ref: Optional[str] = row.get("thread_ref")
        self.iccid: Optional[str] = row.get("iccid")
        self.created_at = row.get("created_at")
        self.last_message_at = row.get("last_message_at")

    def to_dict(self) -> dict[str, Any]:
        return {key: jsonable(value) for key, value in vars(self).items()}

    def __repr__(self) -> str:
        return f"<Conversation {self.id}: {self.sender_phone} -> {self.recipient_phone}>"


class ConversationStore:
    """Conversations and their message log"""

    def __init__(
        self,
        conversations: ConversationManager,
        messages: MessageManager,
    ) -> None:
        self.conversations = conversations
        self.messages = messages

    async def create_tables(self) -> None:
        # messages references conversations
        await self.conversations.create_tables()
        await self.messages.create_tables()

    async def find(self, sender: str, recipient: str) -> Optional[Conversation]:
        record = first(await self.conversations.get_conversation(sender, recipient))
        return Conversation(record) if record else None

    async def find_or_create(
        self,
        sender: str,
        recipient: str,
        bank_id: Optional[str],
        slot: Optional[str],
        iccid: Optional[str] = None,
    ) -> Conversation:
        """
        Exactly one row per (sender, recipient), even when two requests for a
        new pair race: both insert, the constraint lets one through, both re-read.
        """
        existing = await self.find(sender, recipient)
        if existing:
            return existing
        await self.conversations.insert_conversation(
            sender, recipient, bank_id, slot, iccid
        )
        created = await self.find(sender, recipient)
        if not created:
            raise LookupError(f"conversation {sender} -> {recipient} vanished after insert")
        logging.info("conversation %s for %s -> %s", created.id, sender, recipient)
        return created

    async def find_by_id(self, conversation_id: int) -> Optional[Conversation]:
        record = first(await self.conversations.get_by_id(conversation_id))
        return Conversation(record) if record else None

    async def find_by_thread(self, thread_ref: str) -> Optional[Conversation]:
        record = first(await self.conversations.get_by_thread(thread_ref))
        return Conversation(record) if record else None

    async def find_latest_by_sender(self, sender: str) -> Optional[Conversation]:
        record = first(await self.conversations.get_latest_by_sender(sender))
        return Conversation(record) if record else None

    async def update_thread_reference(
        self, conversation_id: int, thread_ref: str, chat_channel: Optional[str] = None
    ) -> None:
        await self.conversations.set_thread_ref(conversation_id, thread_ref, chat_channel)

    async def touch_timestamp(self, conversation_id: int) -> None:
        await self.conversations.touch(conversation_id)

    async def update_iccid(self, conversation_id: int, iccid: str) -> None:
        await self.conversations.set_iccid(conversation_id, iccid)

    async def add_message(
        self,
        conversation_id: int,
        direction: str,
        content: str,
        sent_by: Optional[str] = None,
        status: str = "received",
    ) -> Optional[int]:
        if direction not in ("inbound", "outbound"):
            raise ValueError(f"bad direction {direction}")
        record = first(
            await self.messages.insert_message(
                conversation_id, direction, content, sent_by, status
            )
        )
        return record["id"] if record else None

    async def recent_messages(
        self, conversation_id: int, limit: int = 50
    ) -> list[dict[str, Any]]:
        rows = await self.messages.get_messages(conversation_id, limit) or []
        return [{key: jsonable(value) for key, value in dict(row).items()} for row in rows]

    async def count_conversations(self) -> int:
        record = first(await self.conversations.count())
        return record["count"] if record else 0

    async def count_recent_messages(self) -> int:
        record = first(await self.messages.count_recent())
        return record["count"] if record else 0


class Blocklist:
    def __init__(self, manager: BlockedManager) -> None:
        self.manager = manager

    async def is_blocked(self, phone: str) -> bool:
        return bool(await self.manager.is_blocked(phone))

    async def block(self, phone: str, blocked_by: str, reason: Optional[str] = None) -> None:
        logging.info("%s blocked %s (%s)", blocked_by, phone, reason)
        await self.manager.block(phone, blocked_by, reason)

    async def unblock(self, phone: str) -> bool:
        return bool(await self.manager.unblock(phone))

    async def list(self) -> list[dict[str, Any]]:
        rows = await self.manager.list_blocked() or []
        return [{key: jsonable(value) for key, value in dict(row).items()} for row in rows]

    async def count(self) -> int:
        record = first(await self.manager.count())
        return record["count"] if record else 0
