import os

import yaml

from esk_builder import log
from esk_builder.errors import InvalidConfiguration

DEFAULT_CONFIG = "kernel.yml"

REQUIRED_SECRETS = {
    "GH_TOKEN": "GitHub PAT",
    "TG_BOT_TOKEN": "Telegram Bot Token",
    "TG_CHAT_ID": "chat ID",
}

# Values used when kernel.yml leaves a key out
DEFAULTS = {
    "name": "ESK",
    "defconfig": "gki_defconfig",
    "arch": "arm64",
    "build_user": "builder",
    "build_host": "esk",
    "timezone": "Asia/Ho_Chi_Minh",
    "jobs": 0,
    "patches": "kernel_patches",
    "sources": {},
    "susfs": {},
    "kernelsu": {},
    "bbg": {},
    "toolchain": {},
    "kpm": {},
    "boot_image": {},
}


def read_file(file):
    try:
        log.info("Reading: {}".format(file))
        with open(file, encoding="utf-8") as f:
            data = f.read()
    except OSError as e:
        raise InvalidConfiguration("Cannot open config file: {} - {}".format(file, e))
    return data


def yaml_parse(data):
    result = ""
    for line in data.split("\n"):
        if not line.lstrip().startswith("#"):
            # yaml doesn't like tabs so let's replace them with four spaces
            result += "{}\n".format(line.replace("\t", "    "))
    try:
        return yaml.safe_load(result) or {}
    except yaml.YAMLError as e:
        raise InvalidConfiguration("Invalid YAML: %s" % e)


def load(path=DEFAULT_CONFIG):
    """
    Read the kernel build configuration and fill in defaults

    Every source must look like 'host:owner/repo@ref'
    """
    yml = yaml_parse(read_file(path))
    if not isinstance(yml, dict):
        raise InvalidConfiguration("%s must contain a mapping" % path)

    config = dict(DEFAULTS)
    config.update(yml)

    # An empty section ("toolchain:") loads as None
    for key, default in DEFAULTS.items():
        if isinstance(default, dict):
            if config[key] is None:
                config[key] = {}
            elif not isinstance(config[key], dict):
                raise InvalidConfiguration("%s in %s must be a mapping" % (key, path))

    for key in ("kernel", "anykernel"):
        if not config["sources"].get(key):
            raise InvalidConfiguration("Missing sources.%s in %s" % (key, path))

    if not config["jobs"]:
        config["jobs"] = os.cpu_count() or 1

    return config


def read_secrets(env=None):
    """Tokens are required up-front, before anything touches the workspace"""
    if env is None:
        env = os.environ

    secrets = {}
    for key, description in REQUIRED_SECRETS.items():
        value = env.get(key, "")
        if not value:
            raise InvalidConfiguration("Required %s missing: %s" % (description, key))
        secrets[key] = value
    return secrets
