"""External key codec for managed groups.

A managed group carries an external key of the form
``autogroup|{ruleset_id}|{candidate_key}``. The candidate key is escaped so
that it can never contain the ``|`` delimiter: ``%`` becomes ``%25`` and
``|`` becomes ``%7C``. Decoding reverses the escape in a single pass, which
makes ``decode`` a left inverse of ``encode`` for every candidate key.
"""

import re

from errors import InvalidGroupArgument

NAMESPACE = "autogroup"
DELIMITER = "|"
MANAGED_PREFIX = f"{NAMESPACE}{DELIMITER}"

_ESCAPES = {"%": "%25", DELIMITER: "%7C"}
_UNESCAPES = {v: k for k, v in _ESCAPES.items()}
_ESCAPE_PATTERN = re.compile(r"[%|]")
_UNESCAPE_PATTERN = re.compile(r"%25|%7C")


def escape_candidate_key(candidate_key: str) -> str:
    return _ESCAPE_PATTERN.sub(lambda m: _ESCAPES[m.group(0)], candidate_key)


def unescape_candidate_key(escaped: str) -> str:
    return _UNESCAPE_PATTERN.sub(lambda m: _UNESCAPES[m.group(0)], escaped)


def ruleset_prefix(ruleset_id: int) -> str:
    """Prefix shared by the external keys of every group owned by a RuleSet."""
    return f"{MANAGED_PREFIX}{ruleset_id}{DELIMITER}"


def encode(ruleset_id: int, candidate_key: str) -> str:
    return ruleset_prefix(ruleset_id) + escape_candidate_key(candidate_key)


def decode(external_key: str) -> tuple[int, str]:
    """Split an external key back into (ruleset_id, candidate_key).

    Raises:
        InvalidGroupArgument: If the key is not a well-formed managed key.
    """
    if not is_managed(external_key):
        raise InvalidGroupArgument(f"Not a managed group key: {external_key!r}")
    parts = external_key.split(DELIMITER, 2)
    if len(parts) != 3:  # noqa: PLR2004
        raise InvalidGroupArgument(f"Malformed managed group key: {external_key!r}")
    _, raw_ruleset_id, escaped = parts
    try:
        ruleset_id = int(raw_ruleset_id)
    except ValueError as e:
        raise InvalidGroupArgument(f"Malformed ruleset id in group key: {external_key!r}") from e
    if ruleset_id < 0 or str(ruleset_id) != raw_ruleset_id:
        raise InvalidGroupArgument(f"Malformed ruleset id in group key: {external_key!r}")
    return ruleset_id, unescape_candidate_key(escaped)


def is_managed(external_key: str | None) -> bool:
    return bool(external_key) and external_key.startswith(MANAGED_PREFIX)  # type: ignore[union-attr]


def belongs_to(external_key: str | None, ruleset_id: int) -> bool:
    """True if the key decodes to the given RuleSet."""
    try:
        return decode(external_key or "")[0] == ruleset_id
    except InvalidGroupArgument:
        return False


def default_group_name(candidate_key: str) -> str:
    """Display name derived from a candidate key: first character upper-cased."""
    return candidate_key[:1].upper() + candidate_key[1:]
