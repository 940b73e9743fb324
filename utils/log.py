"""Colorized console logging.

Call sites use ``from utils import log as logging`` and embed short color
codes in their messages, e.g. ``" ---> ~FBTimeline: ~SB%s~SN items"``.
"""

import logging
import re

LOGGER_NAME = "feedstore"

COLORS = {
    "~SB": "\033[1m",
    "~SN": "\033[22m",
    "~SK": "\033[5m",
    "~ST": "\033[0m",
    "~FK": "\033[30m",
    "~FR": "\033[31m",
    "~FG": "\033[32m",
    "~FY": "\033[33m",
    "~FB": "\033[34m",
    "~FM": "\033[35m",
    "~FC": "\033[36m",
    "~FW": "\033[37m",
    "~FT": "\033[39m",
    "~BK": "\033[40m",
    "~BR": "\033[41m",
    "~BG": "\033[42m",
    "~BY": "\033[43m",
    "~BB": "\033[44m",
    "~BM": "\033[45m",
    "~BC": "\033[46m",
    "~BW": "\033[47m",
    "~BT": "\033[49m",
}

PARAMS = {
    r"\-\-\->": "~FB~SB--->~FW",
    r"\*\*\*>": "~FB~SB~BB--->~BT~FW",
    r"\[": "~SB~FB[~SN~FM",
    r"\]": "~FB~SB]~FW~SN",
}

COLOR_CODE = re.compile(r"~[SFB][A-Z]")


def getlogger():
    return logging.getLogger(LOGGER_NAME)


def colorize(msg):
    for pattern, replacement in PARAMS.items():
        msg = re.sub(pattern, replacement, msg)
    msg = msg + "~ST~FW~BT"
    for code, ansi in COLORS.items():
        msg = msg.replace(code, ansi)
    return msg


def decolorize(msg):
    return COLOR_CODE.sub("", msg)


def _render(msg):
    from django.conf import settings

    msg = str(msg)
    if getattr(settings, "LOG_COLORS", True):
        return colorize(msg)
    return decolorize(msg)


def debug(msg):
    getlogger().debug(_render(msg))


def info(msg):
    getlogger().info(_render(msg))


def warning(msg):
    getlogger().warning(_render(msg))


def error(msg):
    getlogger().error(_render(msg))
