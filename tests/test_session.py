import asyncio
import json
import struct
import unittest

from fakes import FakeTransport, fake_profiler, make_config

from relaydrop.app import AppContext
from relaydrop.errors import (
    AllTransportsExhaustedError,
    IntegrityError,
    InvalidStateTransition,
    TransferInProgressError,
    WeakCodeError,
)
from relaydrop.security import EncryptionMode, SecurityEngine
from relaydrop.transfer import ProgressEvent, SessionState, StatusEvent, envelope
from relaydrop.transfer.session import can_transition

CODE = "amber-falcon-river-seven"
OTHER_CODE = "cobalt-harbor-lantern-nine"


async def make_context(*transports, cfg=None, reachable=(80, 443, 9009)):
    cfg = cfg or make_config()
    ctx = AppContext(cfg, profiler=fake_profiler(cfg, reachable), security=SecurityEngine(iterations=1000))
    for transport in transports:
        ctx.registry.register(transport)
    await ctx.start()
    return ctx


class TransitionTableTests(unittest.TestCase):
    def test_forward_only(self):
        self.assertTrue(can_transition(SessionState.IDLE, SessionState.CODE_READY))
        self.assertTrue(can_transition(SessionState.TRANSPORTING, SessionState.TRANSPORTING))
        self.assertFalse(can_transition(SessionState.VERIFYING, SessionState.TRANSPORTING))
        self.assertFalse(can_transition(SessionState.IDLE, SessionState.COMPLETED))
        self.assertFalse(can_transition(SessionState.COMPLETED, SessionState.FAILED))

    def test_failed_and_cancelled_from_any_live_state(self):
        for state in SessionState:
            if state.terminal:
                continue
            self.assertTrue(can_transition(state, SessionState.FAILED))
            self.assertTrue(can_transition(state, SessionState.CANCELLED))


class SessionTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_and_receive_end_to_end(self):
        store = {}
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store))
        receiver_ctx = await make_context(FakeTransport("relay", 10, store=store))
        events = sender_ctx.events.subscribe()

        sent = await sender_ctx.create_session(CODE).send(b"hello world", "greeting.txt")
        self.assertIs(sent.state, SessionState.COMPLETED)
        self.assertEqual(sent.transport, "relay")
        self.assertIs(sent.mode, EncryptionMode.CHACHA20)

        received = await receiver_ctx.create_session(CODE, role="receive").receive()
        self.assertIs(received.state, SessionState.COMPLETED)
        self.assertEqual(received.payload, b"hello world")
        self.assertEqual(received.metadata.file_name, "greeting.txt")
        self.assertIs(received.mode, EncryptionMode.CHACHA20)

        states = []
        while not events.empty():
            event = events.get_nowait()
            if isinstance(event, StatusEvent):
                states.append(event.state)
        self.assertEqual(states[0], "code_ready")
        self.assertEqual(states[-1], "completed")
        self.assertIn("verifying", states)

    async def test_configured_mode_is_used(self):
        store = {}
        cfg = make_config(security={"mode": "hybrid", "kdf_iterations": 10_000})
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store), cfg=cfg)
        receiver_ctx = await make_context(FakeTransport("relay", 10, store=store))
        sent = await sender_ctx.create_session(CODE).send(b"x" * 1000, "a.bin")
        self.assertIs(sent.mode, EncryptionMode.HYBRID)
        received = await receiver_ctx.create_session(CODE, role="receive").receive()
        self.assertEqual(received.payload, b"x" * 1000)

    async def test_weak_code_fails_immediately(self):
        transport = FakeTransport("relay", 10)
        ctx = await make_context(transport)
        session = ctx.create_session("short")
        with self.assertRaises(WeakCodeError):
            await session.send(b"data", "a.txt")
        self.assertIs(session.state, SessionState.FAILED)
        self.assertEqual(transport.calls, [])

    async def test_failover_self_loop_and_exhaustion(self):
        ctx = await make_context(
            FakeTransport("a", 1, fail="connection refused"),
            FakeTransport("b", 2, fail="timed out"),
        )
        session = ctx.create_session(CODE)
        with self.assertRaises(AllTransportsExhaustedError) as caught:
            await session.send(b"data", "a.txt")
        self.assertIs(session.state, SessionState.FAILED)
        self.assertEqual([a.transport for a in caught.exception.attempts], ["a", "b"])
        snapshot = session.snapshot()
        self.assertEqual(len(snapshot.attempts), 2)
        self.assertIsInstance(snapshot.attempts, tuple)

    async def test_failover_reaches_second_transport(self):
        ctx = await make_context(FakeTransport("a", 1, fail="connection reset"), FakeTransport("b", 2))
        result = await ctx.create_session(CODE).send(b"data", "a.txt")
        self.assertEqual(result.transport, "b")
        self.assertEqual([a.outcome for a in result.attempts], ["failed", "success"])

    async def test_cancel_while_transporting(self):
        slow = FakeTransport("slow", 1, delay=30)
        backup = FakeTransport("backup", 2)
        ctx = await make_context(slow, backup)
        session = ctx.create_session(CODE)
        task = asyncio.create_task(session.send(b"data", "a.txt"))
        await slow.started.wait()
        self.assertIs(session.state, SessionState.TRANSPORTING)
        final = await session.cancel(grace=1)
        result = await task
        self.assertIs(final, SessionState.CANCELLED)
        self.assertIs(result.state, SessionState.CANCELLED)
        self.assertEqual(backup.calls, [])
        self.assertEqual(ctx.active_sessions(), [])

    async def test_tampered_envelope_is_rejected(self):
        store = {}
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store))
        receiver = FakeTransport("relay", 10, store=store)
        receiver_ctx = await make_context(receiver)
        await sender_ctx.create_session(CODE).send(b"sensitive", "a.txt")
        transfer_id = next(iter(store))
        blob = bytearray(store[transfer_id])
        blob[-1] ^= 0x01
        store[transfer_id] = bytes(blob)
        session = receiver_ctx.create_session(CODE, role="receive")
        with self.assertRaises(IntegrityError):
            await session.receive()
        self.assertIs(session.state, SessionState.FAILED)
        self.assertEqual(receiver.calls, ["receive"])
        self.assertEqual(receiver.discarded, [])

    async def test_concurrent_sessions_keep_their_own_progress(self):
        shared = FakeTransport("relay", 10, delay=0.2)
        ctx = await make_context(shared)
        events = ctx.events.subscribe()
        first = ctx.create_session(CODE)
        second = ctx.create_session(OTHER_CODE)
        await asyncio.gather(first.send(b"a" * 64, "a.txt"), second.send(b"b" * 4096, "b.txt"))

        seen = {}
        while not events.empty():
            event = events.get_nowait()
            if isinstance(event, ProgressEvent):
                seen.setdefault(event.session_id, []).append(event)
        self.assertEqual(set(seen), {first.session_id, second.session_id})
        self.assertEqual({e.current_file for e in seen[first.session_id]}, {"a.txt"})
        self.assertEqual({e.current_file for e in seen[second.session_id]}, {"b.txt"})
        self.assertEqual(len(set(shared.store)), 2)

    async def test_unknown_header_mode_is_an_integrity_error(self):
        store = {}
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store))
        receiver_ctx = await make_context(FakeTransport("relay", 10, store=store))
        await sender_ctx.create_session(CODE).send(b"sensitive", "a.txt")
        transfer_id = next(iter(store))
        _, header, ciphertext = envelope.unpack(store[transfer_id])
        fields = json.loads(header)
        fields["mode"] = "xyz"
        forged = json.dumps(fields, separators=(",", ":"), sort_keys=True).encode("utf-8")
        store[transfer_id] = struct.pack(">I", len(forged)) + forged + ciphertext
        session = receiver_ctx.create_session(CODE, role="receive")
        with self.assertRaises(IntegrityError):
            await session.receive()
        self.assertIs(session.state, SessionState.FAILED)

    async def test_cancel_after_verification_keeps_payload(self):
        class SlowDiscard(FakeTransport):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.discarding = asyncio.Event()

            async def discard(self, transfer_id):
                self.discarding.set()
                await asyncio.sleep(30)

        store = {}
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store))
        receiver = SlowDiscard("relay", 10, store=store)
        receiver_ctx = await make_context(receiver)
        await sender_ctx.create_session(CODE).send(b"keep me", "a.txt")

        session = receiver_ctx.create_session(CODE, role="receive")
        task = asyncio.create_task(session.receive())
        await receiver.discarding.wait()
        final = await session.cancel(grace=1)
        result = await asyncio.wait_for(task, timeout=5)
        self.assertIs(final, SessionState.COMPLETED)
        self.assertIs(result.state, SessionState.COMPLETED)
        self.assertEqual(result.payload, b"keep me")
        self.assertEqual(receiver_ctx.active_sessions(), [])

    async def test_code_spelling_does_not_change_keys(self):
        store = {}
        sender_ctx = await make_context(FakeTransport("relay", 10, store=store))
        receiver_ctx = await make_context(FakeTransport("relay", 10, store=store))
        session = sender_ctx.create_session("  Amber Falcon-RIVER-seven ")
        self.assertEqual(session.code, CODE)
        await session.send(b"hello", "a.txt")
        received = await receiver_ctx.create_session(CODE, role="receive").receive()
        self.assertEqual(received.payload, b"hello")

    async def test_one_session_per_code(self):
        slow = FakeTransport("slow", 1, delay=30)
        ctx = await make_context(slow)
        first = ctx.create_session(CODE)
        task = asyncio.create_task(first.send(b"data", "a.txt"))
        await slow.started.wait()
        with self.assertRaises(TransferInProgressError):
            ctx.create_session(CODE)
        await first.cancel(grace=1)
        await task
        self.assertIsNotNone(ctx.create_session(CODE))

    async def test_invalid_transition_raises(self):
        ctx = await make_context(FakeTransport("relay", 10))
        session = ctx.create_session(CODE)
        with self.assertRaises(InvalidStateTransition):
            session._transition(SessionState.COMPLETED)

    async def test_close_cancels_active_sessions(self):
        slow = FakeTransport("slow", 1, delay=30)
        ctx = await make_context(slow)
        session = ctx.create_session(CODE)
        task = asyncio.create_task(session.send(b"data", "a.txt"))
        await slow.started.wait()
        await ctx.close()
        result = await task
        self.assertIs(result.state, SessionState.CANCELLED)
        self.assertTrue(slow.closed)


if __name__ == "__main__":
    unittest.main()
