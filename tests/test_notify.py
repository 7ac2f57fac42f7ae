import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import requests

from esk_builder import notify
from esk_builder.errors import NotificationFailure
from esk_builder.options import BuildOptions


def response(payload):
    u = MagicMock()
    u.json.return_value = payload
    return u


class EscapeTests(unittest.TestCase):
    def test_every_special_character_is_escaped(self):
        for char in "_*[]()~`>#+-=|{}.!":
            self.assertEqual(notify.escape_md_v2(char), "\\" + char)

    def test_backslash_is_escaped_once(self):
        self.assertEqual(notify.escape_md_v2("a\\b"), "a\\\\b")

    def test_plain_text(self):
        self.assertEqual(notify.escape_md_v2("ESK-5.10.236-SUKI"), "ESK\\-5\\.10\\.236\\-SUKI")
        self.assertEqual(notify.escape_md_v2("Kernel CI"), "Kernel CI")


class TelegramNotifierTests(unittest.TestCase):
    def setUp(self):
        self.notifier = notify.TelegramNotifier("123:abc", "-1001")

    def test_send_message(self):
        with patch("esk_builder.notify.requests.post", return_value=response({"ok": True, "result": {}})) as post:
            self.notifier.send_message("*hi*")
        url = post.call_args[0][0]
        self.assertEqual(url, "https://api.telegram.org/bot123:abc/sendMessage")
        data = post.call_args[1]["data"]
        self.assertEqual(data["parse_mode"], "MarkdownV2")
        self.assertEqual(data["chat_id"], "-1001")
        self.assertEqual(data["text"], "*hi*")

    def test_not_ok_raises(self):
        payload = {"ok": False, "description": "Bad Request: can't parse entities"}
        with patch("esk_builder.notify.requests.post", return_value=response(payload)):
            with self.assertRaises(NotificationFailure) as ctx:
                self.notifier.send_message("oops.")
        self.assertIn("can't parse entities", str(ctx.exception))

    def test_transport_error_raises(self):
        with patch(
            "esk_builder.notify.requests.post",
            side_effect=requests.exceptions.ConnectionError("down"),
        ):
            with self.assertRaises(NotificationFailure):
                self.notifier.send_message("hi")

    def test_upload_file(self):
        tmp = tempfile.mkdtemp()
        try:
            path = os.path.join(tmp, "build.log")
            with open(path, "w") as f:
                f.write("log")
            with patch("esk_builder.notify.requests.post", return_value=response({"ok": True})) as post:
                self.notifier.upload_file(path, "Build log")
            self.assertTrue(post.call_args[0][0].endswith("/sendDocument"))
            self.assertIn("document", post.call_args[1]["files"])
            self.assertEqual(post.call_args[1]["data"]["caption"], "Build log")
        finally:
            shutil.rmtree(tmp)

    def test_upload_missing_file(self):
        with self.assertRaises(NotificationFailure):
            self.notifier.upload_file("/nonexistent/build.log", "Build log")


class MessageTests(unittest.TestCase):
    def test_error_message(self):
        text = notify.error_message("ESK", "Invalid KSU='x' (expected: NONE|OFFICIAL|NEXT|SUKI)")
        self.assertTrue(text.startswith("*ESK Kernel CI*\n"))
        self.assertIn("ERROR: Invalid KSU\\='x' \\(expected: NONE\\|OFFICIAL", text)

    def test_start_message(self):
        config = {"name": "ESK", "defconfig": "gki_defconfig", "build_user": "builder", "build_host": "esk"}
        options = BuildOptions("SUKI", True, False, True, "thin")
        text = notify.start_message(config, options, "clang 19.0.0", 16)
        self.assertIn("*Defconfig*: gki\\_defconfig", text)
        self.assertIn("*KSU*: SUKI", text)
        self.assertIn("*SuSFS*: true", text)
        self.assertIn("*Jobs*: 16", text)

    def test_success_caption_without_susfs(self):
        text = notify.success_caption({
            "name": "ESK",
            "builder": "builder@esk",
            "kernel_version": "5.10.236",
            "timestamp": "Sat Oct 18 10:00:00 +07 2026",
            "root_framework": "NONE",
            "susfs_version": None,
            "variant": "NONE-LXC",
            "compiler": "clang 19.0.0",
            "artifact": "ESK-5.10.236-NONE-LXC.zip",
            "size": "12.3M",
            "sha256": "ab" * 32,
        })
        self.assertIn("• SuSFS: None", text)
        self.assertIn("• Name: ESK\\-5\\.10\\.236\\-NONE\\-LXC\\.zip", text)


if __name__ == "__main__":
    unittest.main()
