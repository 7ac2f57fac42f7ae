import datetime
import os
import sys

# Build log shared by every module, attached to error notifications
log_file = None

LEVELS = {
    "info": "[i]",
    "success": "[+]",
    "warn": "[-]",
    "error": "[-]",
}


def setup(path):
    """Start a fresh log file for this run"""
    global log_file

    log_file = path
    parent = os.path.dirname(path)
    if parent and not os.path.exists(parent):
        os.makedirs(parent)
    with open(path, "w", encoding="utf-8"):
        pass


def _emit(level, message):
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    prefix = LEVELS[level]
    if level == "warn":
        message = "Warning: " + message
    elif level == "error":
        message = "Error: " + message
    line = "%s [%s] %s %s" % (timestamp, level.upper(), prefix, message)

    stream = sys.stderr if level in ("warn", "error") else sys.stdout
    print(line, file=stream)

    if log_file:
        try:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            print("[-] Logging failed: %s" % e, file=sys.stderr)


def info(message):
    _emit("info", message)


def success(message):
    _emit("success", message)


def warn(message):
    _emit("warn", message)


def error(message):
    _emit("error", message)


def output(text):
    # Raw tool output, kept in the log file only
    if not text or not log_file:
        return
    with open(log_file, "a", encoding="utf-8") as f:
        f.write(text if text.endswith("\n") else text + "\n")
