import asyncio
import threading
import unittest

from gateway.command_gate import CommandGate, new_request_id
from gateway.events import TYPE_COMMAND_BLOCKED, TYPE_PERMISSION_REQUEST, TYPE_PERMISSION_RESPONSE
from gateway.exceptions import PermissionTimeoutError
from gateway.permissions import PermissionManager, PermissionResponse
from gateway.sandbox import SandboxEvaluator


class TestPermissionManager(unittest.IsolatedAsyncioTestCase):
    async def test_delivered_exactly_once(self):
        manager = PermissionManager()
        future = manager.create_request("req_1")

        self.assertTrue(manager.set_response("req_1", PermissionResponse(approved=True, remember=True)))
        self.assertFalse(manager.set_response("req_1", PermissionResponse(approved=False)))

        response = await future.wait(1)
        self.assertEqual(response, PermissionResponse(approved=True, remember=True))
        self.assertEqual(manager.get_response("req_1"), response)

    async def test_unknown_request_dropped(self):
        manager = PermissionManager()
        self.assertFalse(manager.set_response("missing", PermissionResponse(approved=True)))
        self.assertIsNone(manager.get_response("missing"))

    async def test_response_from_another_thread(self):
        manager = PermissionManager()
        future = manager.create_request("req_2")
        worker = threading.Timer(0.05, manager.set_response, args=("req_2", PermissionResponse(approved=True)))
        worker.start()

        response = await future.wait(2)

        worker.join()
        self.assertTrue(response.approved)

    async def test_timeout_then_late_response_dropped(self):
        manager = PermissionManager()
        future = manager.create_request("req_3")

        with self.assertRaises(PermissionTimeoutError):
            await future.wait(0.01)
        manager.remove_request("req_3")

        self.assertFalse(manager.set_response("req_3", PermissionResponse(approved=True)))
        self.assertEqual(manager.pending_ids(), [])

    async def test_recreated_request_cancels_previous(self):
        manager = PermissionManager()
        first = manager.create_request("dup")
        manager.create_request("dup")
        self.assertTrue(first.done())
        self.assertEqual(manager.pending_ids(), ["dup"])


class TestCommandGate(unittest.IsolatedAsyncioTestCase):
    def _gate(self, timeout=1.0):
        sandbox = SandboxEvaluator.from_settings(True, ["/home/allowed"])
        return CommandGate(sandbox, PermissionManager(), timeout=timeout), sandbox

    async def test_allowed_or_commandless_calls_pass(self):
        gate, _ = self._gate()
        events = []

        async def emit(event):
            events.append(event)

        self.assertIsNone(await gate.check("shell", {"command": "ls /home/allowed"}, emit))
        self.assertIsNone(await gate.check("search", {"q": "x"}, emit))
        self.assertEqual(events, [])

    async def test_approve_and_remember_extends_allow_list(self):
        gate, sandbox = self._gate()
        events = []

        async def emit(event):
            events.append(event)
            if event.type == TYPE_PERMISSION_REQUEST:
                asyncio.get_running_loop().call_soon(
                    gate.permissions.set_response,
                    event.request_id,
                    PermissionResponse(approved=True, remember=True),
                )

        result = await gate.check("shell", {"command": "cat /data/report.txt"}, emit)

        self.assertIsNone(result)
        self.assertEqual(
            [e.type for e in events],
            [TYPE_COMMAND_BLOCKED, TYPE_PERMISSION_REQUEST, TYPE_PERMISSION_RESPONSE],
        )
        self.assertEqual(events[1].blocked_paths, ["/data/report.txt"])
        self.assertTrue(events[2].approved)
        self.assertTrue(sandbox.is_path_allowed("/data/report.txt"))

    async def test_timeout_denies(self):
        gate, _ = self._gate(timeout=0.01)
        events = []

        async def emit(event):
            events.append(event)

        result = await gate.check("shell", {"command": "rm /etc/passwd"}, emit)

        self.assertEqual(result, "Command blocked by sandbox: /etc/passwd")
        self.assertFalse(events[-1].approved)
        self.assertEqual(gate.permissions.pending_ids(), [])

    def test_request_id_format(self):
        request_id = new_request_id()
        prefix, stamp, suffix = request_id.split("_")
        self.assertEqual(prefix, "req")
        self.assertEqual(len(stamp), 14)
        self.assertEqual(len(suffix), 8)
