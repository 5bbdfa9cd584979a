"""Configuration line grammar: ``<path> <mask-expr> <reaction>``."""

import os
from typing import Iterator, Optional, Tuple, Union

from .exceptions import ConfigParseError
from .masks import parse_mask_expr
from .models import (
    ForwardToSocket,
    LoadConfig,
    Reaction,
    RunCommand,
    SetWatch,
    WatchSpec,
)


LOAD_CONF = "LOAD_CONF"
SET_WATCH = "SET_WATCH"
FORWARD_PREFIX = "@"
COMMENT = "#"


def resolve_path(raw: str, base_dir: Optional[str] = None) -> str:
    """
    Normalize a path from a configuration line.

    ``~`` is expanded and relative paths are taken relative to ``base_dir``
    (the directory of the configuration resource).
    """
    path = os.path.expanduser(raw)
    if not os.path.isabs(path):
        path = os.path.join(base_dir or os.getcwd(), path)
    return os.path.normpath(path)


def parse_reaction(text: str, base_dir: Optional[str] = None) -> Reaction:
    """
    Parse the reaction field of a configuration line.

    Raises:
        ConfigParseError: On a malformed directive
    """
    text = text.strip()
    if not text:
        raise ConfigParseError("missing reaction")

    words = text.split(None, 1)
    head = words[0]
    rest = words[1].strip() if len(words) > 1 else ""

    if head == LOAD_CONF:
        if not rest:
            return LoadConfig()
        if len(rest.split()) > 1:
            raise ConfigParseError(f"{LOAD_CONF} takes at most one path: {rest!r}")
        return LoadConfig(target=resolve_path(rest, base_dir))

    if head == SET_WATCH:
        fields = rest.split(None, 2)
        if len(fields) < 3:
            raise ConfigParseError(f"{SET_WATCH} needs <path> <mask> <reaction>: {rest!r}")
        parse_mask_expr(fields[1])
        parse_reaction(fields[2], base_dir)
        return SetWatch(
            path=resolve_path(fields[0], base_dir),
            mask_expr=fields[1],
            reaction=fields[2].strip(),
        )

    if head.startswith(FORWARD_PREFIX):
        daemon = head[len(FORWARD_PREFIX):]
        if not daemon:
            raise ConfigParseError(f"missing daemon name in {text!r}")
        return ForwardToSocket(daemon=daemon, payload=rest)

    return RunCommand(cmdline=text)


def parse_line(line: str, source: str, base_dir: Optional[str] = None) -> Optional[WatchSpec]:
    """
    Parse one configuration line.

    Args:
        line: Raw line
        source: Identifier of the resource the line belongs to
        base_dir: Directory relative paths resolve against

    Returns:
        The WatchSpec, or None for blank and comment lines

    Raises:
        ConfigParseError: If the line is malformed
    """
    stripped = line.strip()
    if not stripped or stripped.startswith(COMMENT):
        return None

    fields = stripped.split(None, 2)
    if len(fields) < 3:
        raise ConfigParseError(f"expected <path> <mask> <reaction>, got {stripped!r}")

    raw_path, mask_expr, reaction_text = fields
    mask, create_if_missing, run_if_missing = parse_mask_expr(mask_expr)

    return WatchSpec(
        path=resolve_path(raw_path, base_dir),
        mask=mask,
        reaction=parse_reaction(reaction_text, base_dir),
        source=source,
        create_if_missing=create_if_missing,
        run_if_missing=run_if_missing,
    )


def parse_set_watch(directive: SetWatch, source: str) -> WatchSpec:
    """Turn a SET_WATCH directive into the spec it installs."""
    spec = parse_line(
        f"{directive.path} {directive.mask_expr} {directive.reaction}",
        source,
        base_dir=os.path.dirname(directive.path),
    )
    if spec is None:
        raise ConfigParseError(f"empty {SET_WATCH} directive")
    return spec


def iter_config(
    text: str,
    source: str,
    base_dir: Optional[str] = None,
) -> Iterator[Tuple[int, Union[WatchSpec, ConfigParseError]]]:
    """
    Parse every line of a configuration resource.

    Yields:
        (line number, WatchSpec or the ConfigParseError for that line);
        blank and comment lines are skipped
    """
    for lineno, line in enumerate(text.splitlines(), 1):
        try:
            spec = parse_line(line, source, base_dir)
        except ConfigParseError as e:
            yield lineno, e
            continue
        if spec is not None:
            yield lineno, spec
