import sqlite3
from datetime import timedelta

from micro_x_chat.errors import IoError, SessionNotFoundError
from micro_x_chat.memory import Session, SessionStore
from micro_x_chat.memory.store import SCHEMA_VERSION
from micro_x_chat.messages import ImageBlock, Message, MessageRole, TextBlock, TokenUsage, ToolUseBlock
from tests.memory.base import SessionStoreTestCase


class SessionStoreTests(SessionStoreTestCase):
    def test_insert_and_get_session_round_trip(self) -> None:
        session = Session(title="Round trip", token_usage=TokenUsage.of(3, 4), total_cost=0.5)
        session.set_metadata("model", "gpt-4")
        self._store.insert_session(session)

        loaded = self._store.get_session(session.id)
        self.assertIsNotNone(loaded)
        self.assertEqual(session.id, loaded.id)
        self.assertEqual("Round trip", loaded.title)
        self.assertEqual(TokenUsage.of(3, 4), loaded.token_usage)
        self.assertEqual(0.5, loaded.total_cost)
        self.assertEqual({"model": "gpt-4"}, loaded.metadata)
        self.assertEqual(session.created_at, loaded.created_at)

    def test_get_missing_session_returns_none(self) -> None:
        self.assertIsNone(self._store.get_session("missing"))
        self.assertFalse(self._store.session_exists("missing"))

    def test_update_session_changes_only_given_fields(self) -> None:
        session = Session(title="Before")
        self._store.insert_session(session)

        updated_at = self._store.update_session(session.id, title="After")
        loaded = self._store.get_session(session.id)
        self.assertIsNotNone(updated_at)
        self.assertEqual("After", loaded.title)
        self.assertEqual(0, loaded.message_count)
        self.assertEqual(updated_at, loaded.updated_at)

    def test_update_missing_session_returns_none(self) -> None:
        self.assertIsNone(self._store.update_session("missing", title="x"))

    def test_update_rejects_unknown_fields(self) -> None:
        session = Session(title="s")
        self._store.insert_session(session)
        with self.assertRaises(ValueError):
            self._store.update_session(session.id, id="other")

    def test_list_sessions_orders_by_updated_at_desc(self) -> None:
        older = Session(title="older")
        newer = Session(title="newer")
        newer.updated_at = older.updated_at + timedelta(seconds=5)
        self._store.insert_session(older)
        self._store.insert_session(newer)

        listed = self._store.list_sessions()
        self.assertEqual(["newer", "older"], [s.title for s in listed])
        self.assertEqual(["newer"], [s.title for s in self._store.list_sessions(limit=1)])

    def test_get_or_create_session_is_idempotent(self) -> None:
        first = self._store.get_or_create_session("stable-id", "Stable")
        second = self._store.get_or_create_session("stable-id", "Ignored")
        self.assertEqual("Stable", first.title)
        self.assertEqual("Stable", second.title)
        rows = self._store.execute("SELECT COUNT(*) AS c FROM sessions WHERE id = ?", ("stable-id",))
        self.assertEqual(1, int(rows[0]["c"]))

    def test_last_message_equals_persisted_message(self) -> None:
        session = Session(title="messages")
        self._store.insert_session(session)
        first = Message.user("hello")
        last = Message(
            role=MessageRole.ASSISTANT,
            content=[
                TextBlock("look"),
                ImageBlock(media_type="image/png", data="aGVsbG8="),
                ToolUseBlock(id="call-1", name="read_file", arguments='{"path": "a.txt"}'),
            ],
            metadata={"source": "test"},
        )
        self._store.insert_message(first, session.id)
        self._store.insert_message(last, session.id)

        loaded = self._store.get_messages(session.id)
        self.assertEqual(2, len(loaded))
        self.assertEqual(first, loaded[0])
        self.assertEqual(last, loaded[-1])

    def test_get_messages_limit_returns_most_recent_in_order(self) -> None:
        session = Session(title="limit")
        self._store.insert_session(session)
        for i in range(5):
            self._store.insert_message(Message.user(f"m{i}"), session.id)

        recent = self._store.get_messages(session.id, limit=2)
        self.assertEqual(["m3", "m4"], [m.text_content() for m in recent])
        self.assertEqual(5, self._store.count_messages(session.id))

    def test_delete_session_cascades_to_messages(self) -> None:
        session = Session(title="cascade")
        self._store.insert_session(session)
        self._store.insert_message(Message.user("one"), session.id)
        self._store.insert_message(Message.assistant("two"), session.id)

        self.assertTrue(self._store.delete_session(session.id))
        self.assertIsNone(self._store.get_session(session.id))
        self.assertEqual([], self._store.get_messages(session.id))
        self.assertFalse(self._store.delete_session(session.id))

    def test_insert_message_for_missing_session_fails_with_foreign_keys(self) -> None:
        with self.assertRaises(IoError):
            self._store.insert_message(Message.user("orphan"), "missing")

    def test_append_message_bumps_count_in_the_same_write(self) -> None:
        session = Session(title="append")
        self._store.insert_session(session)

        updated_at = self._store.append_message(Message.user("one"), session.id)

        loaded = self._store.get_session(session.id)
        self.assertEqual(1, loaded.message_count)
        self.assertEqual(updated_at, loaded.updated_at)
        self.assertEqual(["one"], [m.text_content() for m in self._store.get_messages(session.id)])

    def test_failed_append_rolls_back_the_count(self) -> None:
        session = Session(title="rollback")
        self._store.insert_session(session)
        self._store.execute(
            "CREATE TRIGGER reject_messages BEFORE INSERT ON messages BEGIN SELECT RAISE(ABORT, 'disk full'); END"
        )

        with self.assertRaises(IoError) as ctx:
            self._store.append_message(Message.user("lost"), session.id)

        self.assertIn("disk full", str(ctx.exception))
        self.assertEqual(0, self._store.get_session(session.id).message_count)
        self.assertEqual(0, self._store.count_messages(session.id))

    def test_append_to_missing_session_writes_nothing(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            self._store.append_message(Message.user("orphan"), "missing")
        self.assertEqual(0, self._store.count_messages("missing"))

    def test_delete_messages_keeps_session(self) -> None:
        session = Session(title="clear")
        self._store.insert_session(session)
        self._store.insert_message(Message.user("one"), session.id)
        self.assertEqual(1, self._store.delete_messages(session.id))
        self.assertTrue(self._store.session_exists(session.id))
        self.assertEqual(0, self._store.count_messages(session.id))

    def test_deleting_parent_clears_child_reference(self) -> None:
        parent = Session(title="parent")
        child = Session(title="child", parent_session_id=parent.id)
        self._store.insert_session(parent)
        self._store.insert_session(child)

        self._store.delete_session(parent.id)
        self.assertIsNone(self._store.get_session(child.id).parent_session_id)

    def test_schema_is_migrated_to_current_version(self) -> None:
        self.assertEqual(SCHEMA_VERSION, self._store.schema_version())
        indexes = {
            row["name"]
            for row in self._store.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        self.assertIn("idx_messages_session_id", indexes)
        self.assertIn("idx_messages_role", indexes)

    def test_reopening_database_keeps_schema_version(self) -> None:
        self._store.close()
        self._store = SessionStore(str(self._tmp_dir / "sessions.db"))
        self.assertEqual(SCHEMA_VERSION, self._store.schema_version())
        rows = self._store.execute("SELECT COUNT(*) AS c FROM schema_version")
        self.assertEqual(1, int(rows[0]["c"]))

    def test_stats_counts_rows(self) -> None:
        session = Session(title="stats")
        self._store.insert_session(session)
        self._store.insert_message(Message.user("hi"), session.id)

        stats = self._store.get_stats()
        self.assertEqual(1, stats["session_count"])
        self.assertEqual(1, stats["message_count"])
        self.assertGreater(stats["database_size_bytes"], 0)
        self.assertTrue(stats["foreign_keys_enabled"])

    def test_transaction_rolls_back_on_error(self) -> None:
        session = Session(title="rollback")
        self._store.insert_session(session)
        with self.assertRaises(RuntimeError):
            with self._store.transaction() as conn:
                conn.execute("UPDATE sessions SET title = 'changed' WHERE id = ?", (session.id,))
                raise RuntimeError("boom")
        self.assertEqual("rollback", self._store.get_session(session.id).title)

    def test_vacuum_succeeds(self) -> None:
        self._store.vacuum()


class SessionStoreWithoutForeignKeysTests(SessionStoreTestCase):
    foreign_keys = False

    def test_orphaned_messages_are_swept(self) -> None:
        session = Session(title="orphans")
        self._store.insert_session(session)
        self._store.insert_message(Message.user("kept"), session.id)
        self._store.insert_message(Message.user("orphan"), "no-such-session")

        self.assertEqual(1, self._store.clean_orphaned_messages())
        self.assertEqual(1, self._store.count_messages(session.id))
        self.assertEqual(0, self._store.count_messages("no-such-session"))

    def test_sweep_is_noop_once_foreign_keys_enabled(self) -> None:
        self._store.insert_message(Message.user("orphan"), "no-such-session")
        self._store.set_foreign_keys(True)
        self.assertEqual(0, self._store.clean_orphaned_messages())
        self.assertTrue(self._store.foreign_keys_enabled)

    def test_raw_sqlite_connection_sees_committed_rows(self) -> None:
        session = Session(title="visible")
        self._store.insert_session(session)
        conn = sqlite3.connect(self._store.db_path)
        try:
            row = conn.execute("SELECT title FROM sessions WHERE id = ?", (session.id,)).fetchone()
        finally:
            conn.close()
        self.assertEqual(("visible",), row)
