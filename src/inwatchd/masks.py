"""Event mask vocabulary.

Bit values come straight from ``inotify_simple.flags`` so that masks built
here can be handed to the kernel unchanged.
"""

from typing import Dict, List, Tuple

from inotify_simple import flags, masks

from .exceptions import ConfigParseError


ACCESS = int(flags.ACCESS)
MODIFY = int(flags.MODIFY)
ATTRIB = int(flags.ATTRIB)
CLOSE_WRITE = int(flags.CLOSE_WRITE)
CLOSE_NOWRITE = int(flags.CLOSE_NOWRITE)
OPEN = int(flags.OPEN)
MOVED_FROM = int(flags.MOVED_FROM)
MOVED_TO = int(flags.MOVED_TO)
CREATE = int(flags.CREATE)
DELETE = int(flags.DELETE)
DELETE_SELF = int(flags.DELETE_SELF)
MOVE_SELF = int(flags.MOVE_SELF)

UNMOUNT = int(flags.UNMOUNT)
Q_OVERFLOW = int(flags.Q_OVERFLOW)
IGNORED = int(flags.IGNORED)
ISDIR = int(flags.ISDIR)

ONLYDIR = int(flags.ONLYDIR)
DONT_FOLLOW = int(flags.DONT_FOLLOW)
EXCL_UNLINK = int(flags.EXCL_UNLINK)

CLOSE = int(masks.CLOSE)
MOVE = int(masks.MOVE)
ALL_EVENTS = int(masks.ALL_EVENTS)

# Kernel-reported anomalies, never requested by a watch.
ERROR_EVENTS = UNMOUNT | Q_OVERFLOW | IGNORED
# The watched path itself went away.
SELF_GONE = DELETE_SELF | MOVE_SELF
# Kinds that mean "content changed" for replace-dance detection.
CONTENT_EVENTS = MODIFY | CLOSE_WRITE | ATTRIB

# Pseudo-kinds: configuration syntax only, never sent to the kernel.
CREATE_SELF = "CREATE_SELF"
RUN_SELF = "RUN_SELF"

EVENT_KINDS: Dict[str, int] = {
    "ACCESS": ACCESS,
    "MODIFY": MODIFY,
    "ATTRIB": ATTRIB,
    "CLOSE_WRITE": CLOSE_WRITE,
    "CLOSE_NOWRITE": CLOSE_NOWRITE,
    "OPEN": OPEN,
    "MOVED_FROM": MOVED_FROM,
    "MOVED_TO": MOVED_TO,
    "CREATE": CREATE,
    "DELETE": DELETE,
    "DELETE_SELF": DELETE_SELF,
    "MOVE_SELF": MOVE_SELF,
    "UNMOUNT": UNMOUNT,
    "Q_OVERFLOW": Q_OVERFLOW,
    "IGNORED": IGNORED,
    "ISDIR": ISDIR,
}

EVENT_GROUPS: Dict[str, int] = {
    "CLOSE": CLOSE,
    "MOVE": MOVE,
    "ALL_EVENTS": ALL_EVENTS,
}

WATCH_OPTIONS: Dict[str, int] = {
    "ONLYDIR": ONLYDIR,
    "DONT_FOLLOW": DONT_FOLLOW,
    "EXCL_UNLINK": EXCL_UNLINK,
}

# Names a configuration line may request. Anomaly kinds are delivered
# regardless and are not accepted as input.
_REQUESTABLE: Dict[str, int] = {
    name: bit
    for name, bit in EVENT_KINDS.items()
    if not bit & (ERROR_EVENTS | ISDIR)
}
_REQUESTABLE.update(EVENT_GROUPS)
_REQUESTABLE.update(WATCH_OPTIONS)


def _normalize(token: str) -> str:
    name = token.strip().upper()
    if name.startswith("IN_"):
        name = name[3:]
    return name


def parse_mask_expr(expr: str) -> Tuple[int, bool, bool]:
    """
    Parse a pipe-separated mask expression.

    Args:
        expr: Expression such as ``IN_MODIFY|IN_CREATE_SELF``

    Returns:
        (mask, create_if_missing, run_if_missing)

    Raises:
        ConfigParseError: On an empty expression or unknown token, or a
            numeric token carrying kernel-reported bits
    """
    mask = 0
    create_if_missing = False
    run_if_missing = False

    tokens = expr.split("|")
    if not expr.strip() or any(not t.strip() for t in tokens):
        raise ConfigParseError(f"empty token in mask expression: {expr!r}")

    for token in tokens:
        name = _normalize(token)
        if name == CREATE_SELF:
            create_if_missing = True
        elif name == RUN_SELF:
            run_if_missing = True
        elif name in _REQUESTABLE:
            mask |= _REQUESTABLE[name]
        else:
            try:
                value = int(token.strip(), 0)
            except ValueError:
                raise ConfigParseError(f"unknown event kind: {token.strip()!r}") from None
            if value & (ERROR_EVENTS | ISDIR):
                raise ConfigParseError(
                    f"{token.strip()!r} sets kernel-reported bits "
                    f"({describe_mask(value & (ERROR_EVENTS | ISDIR))})"
                )
            mask |= value

    if mask == 0 and not (create_if_missing or run_if_missing):
        raise ConfigParseError(f"mask expression selects no events: {expr!r}")

    return mask, create_if_missing, run_if_missing


def mask_names(mask: int) -> List[str]:
    """Return the ``IN_*`` names of every single-bit kind set in ``mask``."""
    names = [f"IN_{name}" for name, bit in EVENT_KINDS.items() if mask & bit]
    names.extend(f"IN_{name}" for name, bit in WATCH_OPTIONS.items() if mask & bit)
    return names


def describe_mask(mask: int) -> str:
    """Render a mask the way it would be written in a configuration line."""
    if mask & ALL_EVENTS == ALL_EVENTS:
        rest = mask & ~ALL_EVENTS
        return "|".join(["IN_ALL_EVENTS"] + mask_names(rest))
    return "|".join(mask_names(mask)) or "0"
