import asyncio
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from chatsync.conversations import InMemoryConversationStore
from chatsync.errors import InvalidMessage, InvalidTarget
from chatsync.hub import (
    BROADCAST_INBOX_TOPIC,
    EVENT_MESSAGE,
    EVENT_METADATA,
    EVENT_SNAPSHOT,
    SyncChannel,
    SyncEvent,
    conversation_topic,
    inbox_topic,
)
from chatsync.log import Message, MessageLog, clean_text, preview
from chatsync.resolver import BROADCAST_KEY, resolve


class TestMessageLog(unittest.TestCase):
    def setUp(self) -> None:
        self.conversations = InMemoryConversationStore(now_func=lambda: 1_000)
        self.log = MessageLog(self.conversations, now_func=lambda: 1_000)
        self.key = resolve("u1", "u2")

    def test_hello_world_order_and_preview(self):
        self.log.append(self.key, "u1", "hello")
        self.log.append(self.key, "u2", "world")

        self.assertEqual([m.text for m in self.log.read(self.key)], ["hello", "world"])
        self.assertEqual(self.conversations.get(self.key).last_message_preview, "world")

    def test_seq_increments_per_conversation(self):
        first = self.log.append(self.key, "u1", "a")
        second = self.log.append(self.key, "u2", "b")
        other = self.log.append(BROADCAST_KEY, "u9", "c")

        self.assertEqual((first.seq, second.seq, other.seq), (1, 2, 1))
        self.assertNotEqual(first.msg_id, second.msg_id)
        self.assertEqual(self.log.last_seq(self.key), 2)

    def test_blank_text_is_rejected_without_mutation(self):
        for text in ["", "   ", "\n\t", None]:
            with self.subTest(text=text):
                with self.assertRaises(InvalidMessage):
                    self.log.append(self.key, "u1", text)

        self.assertEqual(list(self.log.read(self.key)), [])
        self.assertIsNone(self.conversations.get(self.key))

    def test_rejects_non_participant_sender(self):
        with self.assertRaises(InvalidTarget):
            self.log.append(self.key, "u3", "intruder")
        self.assertIsNone(self.conversations.get(self.key))

    def test_text_is_stripped_and_length_limited(self):
        log = MessageLog(self.conversations, max_message_chars=5)

        self.assertEqual(log.append(self.key, "u1", "  hey  ").text, "hey")
        with self.assertRaises(InvalidMessage):
            log.append(self.key, "u1", "toolong")

    def test_sent_at_never_moves_backwards(self):
        times = iter([5_000, 3_000, 7_000])
        log = MessageLog(self.conversations, now_func=lambda: next(times))

        sent = [log.append(self.key, "u1", str(i)).sent_at_ms for i in range(3)]
        self.assertEqual(sent, [5_000, 5_000, 7_000])

    def test_read_is_restartable_and_finite(self):
        self.log.append(self.key, "u1", "one")
        reader = self.log.read(self.key)
        self.log.append(self.key, "u1", "two")

        self.assertEqual([m.text for m in reader], ["one"])
        self.assertEqual([m.text for m in self.log.read(self.key)], ["one", "two"])

    def test_list_from_is_inclusive(self):
        for i in range(1, 6):
            self.log.append(self.key, "u1", str(i))

        window = self.log.list_from(self.key, from_seq=3, limit=2)
        self.assertEqual([m.seq for m in window], [3, 4])
        self.assertEqual([m.seq for m in self.log.list_from(self.key, 4)], [4, 5])

    def test_concurrent_senders_keep_a_total_order(self):
        barrier = threading.Barrier(2)

        def send_many(sender: str) -> list[Message]:
            barrier.wait()
            return [self.log.append(self.key, sender, f"{sender}-{i}") for i in range(50)]

        with ThreadPoolExecutor(max_workers=2) as pool:
            sent = dict(zip(["u1", "u2"], pool.map(send_many, ["u1", "u2"])))

        history = list(self.log.read(self.key))
        self.assertEqual([m.seq for m in history], list(range(1, 101)))
        self.assertEqual([m.sent_at_ms for m in history], sorted(m.sent_at_ms for m in history))
        for sender, messages in sent.items():
            own = [m.text for m in history if m.sender_id == sender]
            self.assertEqual(own, [m.text for m in messages])
        self.assertEqual(self.conversations.get(self.key).revision, 101)


class TestTextHelpers(unittest.TestCase):
    def test_preview_truncates_with_ellipsis(self):
        self.assertEqual(preview("short", 10), "short")
        clipped = preview("x" * 100, 10)
        self.assertEqual(len(clipped), 10)
        self.assertTrue(clipped.endswith("…"))

    def test_clean_text(self):
        self.assertEqual(clean_text("  hi "), "hi")
        with self.assertRaises(InvalidMessage):
            clean_text(42)


async def settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


class TestSyncChannel(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.channel = SyncChannel()
        self.key = resolve("u1", "u2")
        self.conversations = InMemoryConversationStore(self.channel, now_func=lambda: 1_000)
        self.log = MessageLog(self.conversations, self.channel, now_func=lambda: 1_000)

    async def test_deliveries_follow_commit_order(self):
        events: list[SyncEvent] = []
        self.channel.subscribe([conversation_topic(self.key)], events.append)

        await asyncio.to_thread(self.log.append, self.key, "u1", "one")
        await asyncio.to_thread(self.log.append, self.key, "u2", "two")
        await settle()

        self.assertEqual(
            [e.type for e in events],
            [EVENT_METADATA, EVENT_MESSAGE, EVENT_METADATA, EVENT_MESSAGE, EVENT_METADATA],
        )
        self.assertEqual([e.message.seq for e in events if e.type == EVENT_MESSAGE], [1, 2])
        self.assertEqual([e.metadata.revision for e in events if e.type == EVENT_METADATA], [1, 2, 3])

    async def test_metadata_reaches_each_participant_inbox(self):
        inbox: dict[str, list[SyncEvent]] = {"u1": [], "u2": [], "u3": []}
        for user_id, events in inbox.items():
            self.channel.subscribe([inbox_topic(user_id), BROADCAST_INBOX_TOPIC], events.append)

        self.log.append(self.key, "u1", "private")
        self.log.append(BROADCAST_KEY, "u3", "everyone")
        await settle()

        keys = {user_id: {e.conv_key for e in events} for user_id, events in inbox.items()}
        self.assertEqual(keys["u1"], {self.key, BROADCAST_KEY})
        self.assertEqual(keys["u2"], {self.key, BROADCAST_KEY})
        self.assertEqual(keys["u3"], {BROADCAST_KEY})

    async def test_unsubscribe_stops_pending_deliveries(self):
        events: list[SyncEvent] = []
        handle = self.channel.subscribe([conversation_topic(self.key)], events.append)

        self.log.append(self.key, "u1", "queued")
        self.channel.unsubscribe(handle)
        await settle()
        self.log.append(self.key, "u1", "after")
        await settle()

        self.assertEqual(events, [])
        self.assertEqual(self.channel.subscriber_count(conversation_topic(self.key)), 0)

    async def test_failing_observer_does_not_break_the_channel(self):
        seen: list[SyncEvent] = []
        calls = 0

        def explode(event: SyncEvent) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("observer bug")

        topic = conversation_topic(self.key)
        self.channel.subscribe([topic], explode)
        self.channel.subscribe([topic], seen.append)

        with self.assertLogs("chatsync.hub", level="ERROR"):
            self.log.append(self.key, "u1", "one")
            self.log.append(self.key, "u1", "two")
            await settle()

        self.assertEqual(calls, 5)
        self.assertEqual(len(seen), 5)

    async def test_buffered_subscription_drops_deltas_covered_by_snapshot(self):
        events: list[SyncEvent] = []
        handle = self.channel.subscribe([conversation_topic(self.key)], events.append, buffering=True)

        first = self.log.append(self.key, "u1", "one")
        self.log.append(self.key, "u1", "two")
        await settle()
        self.assertEqual(events, [])

        snapshot = SyncEvent(type=EVENT_SNAPSHOT, conv_key=self.key, history=(first,))

        def covered(event: SyncEvent) -> bool:
            return event.type != EVENT_MESSAGE or event.message.seq <= first.seq

        handle.release(snapshot, covered)
        await settle()

        self.assertEqual([e.type for e in events], [EVENT_SNAPSHOT, EVENT_MESSAGE])
        self.assertEqual(events[1].message.text, "two")

    async def test_close_deactivates_everything(self):
        events: list[SyncEvent] = []
        handle = self.channel.subscribe([conversation_topic(self.key), inbox_topic("u1")], events.append)

        self.channel.close()
        self.log.append(self.key, "u1", "ignored")
        await settle()

        self.assertFalse(handle.active)
        self.assertEqual(events, [])


if __name__ == "__main__":
    unittest.main()
