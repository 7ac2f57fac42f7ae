import os

import requests

from esk_builder.errors import NotificationFailure

API_URL = "https://api.telegram.org/bot{token}/{method}"

# Characters Telegram's MarkdownV2 wants escaped outside of entities
MD_V2_SPECIAL = "\\_*[]()~`>#+-=|{}.!"


def escape_md_v2(text):
    text = str(text)
    for char in MD_V2_SPECIAL:
        text = text.replace(char, "\\" + char)
    return text


class TelegramNotifier:
    def __init__(self, token, chat_id, timeout=60):
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout

    def _post(self, method, data, files=None, timeout=None):
        url = API_URL.format(token=self.token, method=method)
        try:
            u = requests.post(url, data=data, files=files, timeout=timeout or self.timeout)
            result = u.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise NotificationFailure("%s failed: %s" % (method, e))
        if not result.get("ok"):
            raise NotificationFailure(
                "%s failed: %s" % (method, result.get("description", "Unknown error"))
            )
        return result.get("result")

    def send_message(self, text):
        return self._post(
            "sendMessage",
            {
                "chat_id": self.chat_id,
                "parse_mode": "MarkdownV2",
                "disable_web_page_preview": "true",
                "text": text,
            },
        )

    def upload_file(self, path, caption):
        if not os.path.isfile(path):
            raise NotificationFailure("Cannot upload missing file: " + path)
        with open(path, "rb") as document:
            return self._post(
                "sendDocument",
                {
                    "chat_id": self.chat_id,
                    "parse_mode": "MarkdownV2",
                    "caption": caption,
                },
                files={"document": document},
                timeout=max(self.timeout, 300),
            )


class NullNotifier:
    """Used with --no-notify"""

    def send_message(self, text):
        return None

    def upload_file(self, path, caption):
        return None


def bold(text):
    return "*%s*" % escape_md_v2(text)


def field(name, value):
    return "*%s*: %s" % (escape_md_v2(name), escape_md_v2(value))


def start_message(config, options, compiler, jobs):
    lines = [
        bold("%s Kernel Build Started!" % config["name"]),
        "",
        field("Kernel", config["name"]),
        field("Defconfig", config["defconfig"]),
        field("Builder", "%s@%s" % (config["build_user"], config["build_host"])),
        field("Compiler", compiler or "-"),
        field("KSU", options.root_framework),
        field("SuSFS", str(options.susfs).lower()),
        field("LXC", str(options.lxc).lower()),
        field("BBG", str(options.bbg).lower()),
        field("LTO", options.lto),
        field("Jobs", jobs),
    ]
    return "\n".join(lines)


def error_message(kernel_name, err):
    return "%s\n%s" % (
        bold("%s Kernel CI" % kernel_name),
        escape_md_v2("ERROR: %s" % err),
    )


def success_caption(info):
    """
    Caption of the uploaded zip

    Args:
        info: dict with name, builder, kernel_version, timestamp, root_framework,
              susfs_version, compiler, variant, artifact, size, sha256
    """
    susfs = escape_md_v2(info["susfs_version"]) if info.get("susfs_version") else "None"
    lines = [
        bold("%s Build Successfully!" % info["name"]),
        "",
        field("Builder", info["builder"]),
        field("Kernel", info["name"]),
        "",
        bold("Build info"),
        "• Linux: " + escape_md_v2(info["kernel_version"]),
        "• Date: " + escape_md_v2(info["timestamp"]),
        "• KernelSU: " + escape_md_v2(info["root_framework"]),
        "• SuSFS: " + susfs,
        "• Variant: " + escape_md_v2(info["variant"]),
        "• Compiler: " + escape_md_v2(info["compiler"]),
        "",
        bold("Artifact"),
        "• Name: " + escape_md_v2(info["artifact"]),
        "• Size: " + escape_md_v2(info["size"]),
        "• SHA256: " + escape_md_v2(info["sha256"]),
    ]
    return "\n".join(lines)
