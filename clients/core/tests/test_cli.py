import io
import tempfile
import unittest
from pathlib import Path

import pytest
from aiohttp.test_utils import TestServer

from quickchat import cli
from quickchat.kv_store import JsonFileStore
from quickchat.session import SESSION_KEY
from quickchat_backend.http_app import create_app


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_login_arguments():
    args = cli.build_parser().parse_args(
        ["--base-url", "http://x", "login", "--dial-code", "+44", "--phone", "7700", "--otp", "1234"]
    )
    assert args.command == "login"
    assert args.base_url == "http://x"
    assert args.dial_code == "+44"


class CliFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.server = TestServer(create_app())
        await self.server.start_server()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    async def asyncTearDown(self):
        await self.server.close()

    async def _run(self, *argv, home="alice"):
        output = io.StringIO()
        base = ["--base-url", str(self.server.make_url("")), "--home", str(Path(self.tmpdir.name) / home)]
        args = cli.build_parser().parse_args(base + list(argv))
        code = await cli._dispatch(args, output)
        return code, output.getvalue()

    async def test_login_profile_chat_and_send(self):
        code, out = await self._run("login", "--dial-code", "+1", "--phone", "555 0001", "--otp", "1234")
        self.assertEqual(code, 0)
        self.assertIn("created account +15550001", out)
        self.assertIn("quickchat profile --name", out)
        stored = JsonFileStore(Path(self.tmpdir.name) / "alice" / "store.json").get(SESSION_KEY)
        self.assertIn("+15550001", stored)

        await self._run("login", "--dial-code", "+1", "--phone", "5550002", "--otp", "4321", home="bob")
        _, out = await self._run("profile", "--name", "Bob", home="bob")
        self.assertIn("saved name", out)

        _, out = await self._run("contacts", "--search", "bob")
        bob_id = out.split()[0]
        _, out = await self._run("new-chat", bob_id)
        conversation_id = out.split()[0]
        self.assertIn("Bob", out)

        _, out = await self._run("send", conversation_id, "hi bob")
        self.assertTrue(out.startswith("sent "))

        _, out = await self._run("chats", home="bob")
        self.assertIn("hi bob", out)

        _, out = await self._run("tail", conversation_id, "--seconds", "0.2", home="bob")
        self.assertIn("-- Today --", out)
        self.assertIn("hi bob", out)

        _, out = await self._run("whoami")
        self.assertIn("+15550001", out)
        _, out = await self._run("logout")
        self.assertEqual(out, "signed out\n")

        code, out = await self._run("login", "--dial-code", "+1", "--phone", "5550001", "--otp", "9876")
        self.assertEqual(code, 0)
        self.assertIn("signed in +15550001", out)

    async def test_commands_require_login(self):
        with self.assertRaises(cli.CliError):
            await self._run("chats")


if __name__ == "__main__":
    unittest.main()
