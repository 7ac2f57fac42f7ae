from collections import namedtuple

from esk_builder import log
from esk_builder.errors import InvalidConfiguration

NONE = "NONE"
OFFICIAL = "OFFICIAL"
NEXT = "NEXT"
SUKI = "SUKI"

ROOT_FRAMEWORKS = (NONE, OFFICIAL, NEXT, SUKI)

# Older CI configs call the upstream KernelSU variant "KSU"
ROOT_FRAMEWORK_ALIASES = {
    "KSU": OFFICIAL,
}

LTO_THIN = "thin"
LTO_FULL = "full"
LTO_MODES = (LTO_THIN, LTO_FULL)

TRUE_VALUES = ("1", "y", "yes", "t", "true", "on")
FALSE_VALUES = ("0", "n", "no", "f", "false", "off")

BuildOptions = namedtuple("BuildOptions", ["root_framework", "susfs", "lxc", "bbg", "lto"])


def normalize_bool(value, name="value"):
    if value is None or not str(value).strip():
        return False
    v = str(value).strip().lower()
    if v in TRUE_VALUES:
        return True
    if v not in FALSE_VALUES:
        log.warn("Unrecognized %s='%s', treating it as false" % (name, value))
    return False


def normalize_root_framework(value):
    if value is None or not str(value).strip():
        return NONE
    v = str(value).strip().upper()
    v = ROOT_FRAMEWORK_ALIASES.get(v, v)
    if v not in ROOT_FRAMEWORKS:
        raise InvalidConfiguration(
            "Invalid KSU='%s' (expected: %s)" % (value, "|".join(ROOT_FRAMEWORKS))
        )
    return v


def normalize_lto(value):
    if value is None or not str(value).strip():
        return LTO_THIN
    v = str(value).strip().lower()
    if v not in LTO_MODES:
        log.warn("Unknown Clang LTO mode '%s', falling back to Thin LTO" % value)
        return LTO_THIN
    return v


def normalize_options(env):
    """
    Build the immutable option set from raw environment strings

    Args:
        env: mapping with any of KSU, SUSFS, LXC, BBG, LTO

    Raises:
        InvalidConfiguration: KSU does not name a known root framework
    """
    return BuildOptions(
        root_framework=normalize_root_framework(env.get("KSU")),
        susfs=normalize_bool(env.get("SUSFS"), "SUSFS"),
        lxc=normalize_bool(env.get("LXC"), "LXC"),
        bbg=normalize_bool(env.get("BBG"), "BBG"),
        lto=normalize_lto(env.get("LTO")),
    )
