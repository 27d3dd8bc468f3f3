"""
Positional filter keys and edition helpers.

ISTAT data queries select series with a dot-separated key where each position
matches one dimension of the dataset, in the order declared by its data
structure. An empty position is a wildcard:

    "M..IT"   -> FREQ=M, any second dimension, REF_AREA=IT

Positions are always 1-based, as in the SDMX documentation.

Example:
    >>> build_filter_key(5, {1: "M", 3: "IT"})
    'M..IT..'
    >>> merge_filter("M....", {4: "G_2024_01"})
    'M...G_2024_01.'
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import date

from istatkit._errors import ValidationError

WILDCARD_FILTER = "ALL"

_FILTER_PATTERN = re.compile(r"^[A-Za-z0-9_.+*~-]*$")
_EDITION_PATTERN = re.compile(r"^[A-Za-z]+_(\d{4})_(\d{1,2})(?:_(\d{1,2}))?$")


def is_wildcard_filter(filter_key: str | None) -> bool:
    """
    Tell whether a filter selects every series.

    Example:
        >>> is_wildcard_filter("ALL"), is_wildcard_filter("..."), is_wildcard_filter("M..")
        (True, True, False)
    """
    if filter_key is None:
        return True
    key = filter_key.strip()
    if key.upper() in ("", WILDCARD_FILTER, "*", "~"):
        return True
    return all(part == "" for part in key.split("."))


def validate_filter(filter_key: str) -> str:
    """
    Reject filter keys containing characters that cannot appear in a path segment.

    Raises:
        ValidationError: If the filter is empty or contains invalid characters.
    """
    if not isinstance(filter_key, str) or not filter_key.strip():
        raise ValidationError("filter must be a non-empty string")
    if not _FILTER_PATTERN.match(filter_key):
        raise ValidationError(
            f"Invalid filter '{filter_key}': only letters, digits and the characters . _ + * ~ - are allowed"
        )
    return filter_key


def _check_positions(n_dims: int, positions: Mapping[int, str]) -> dict[int, str]:
    if not isinstance(positions, Mapping):
        raise ValidationError("positions must be a mapping of position number to value")

    checked: dict[int, str] = {}
    for key, value in positions.items():
        if isinstance(key, bool):
            raise ValidationError("positions must be integer position numbers")
        try:
            position = int(key)
        except (TypeError, ValueError):
            raise ValidationError("positions must be integer position numbers") from None
        if str(position) != str(key).strip():
            raise ValidationError("positions must be integer position numbers")
        checked[position] = "" if value is None else str(value)

    out_of_range = sorted(p for p in checked if p < 1 or p > n_dims)
    if out_of_range:
        raise ValidationError(
            f"Position(s) out of range: {out_of_range}. Valid range: 1-{n_dims}"
        )
    return checked


def _check_n_dims(n_dims: object) -> int:
    if isinstance(n_dims, bool) or not isinstance(n_dims, int) or n_dims < 1:
        raise ValidationError("n_dims must be a positive integer")
    return n_dims


def build_filter_key(n_dims: int, positions: Mapping[int, str]) -> str:
    """
    Build a positional filter key.

    Args:
        n_dims: Number of dimensions of the dataset.
        positions: Mapping of 1-based position to value. Missing positions are wildcards.

    Returns:
        The dot-separated filter key, with ``n_dims - 1`` dots.

    Raises:
        ValidationError: On a non-positive ``n_dims``, non-integer or out-of-range positions.

    Example:
        >>> build_filter_key(8, {1: "M", 7: "G_2024_01"})
        'M......G_2024_01.'
        >>> build_filter_key(4, {})
        '...'
    """
    n_dims = _check_n_dims(n_dims)
    checked = _check_positions(n_dims, positions)
    parts = [checked.get(position, "") for position in range(1, n_dims + 1)]
    return ".".join(parts)


def merge_filter(
    base: str | None,
    updates: Mapping[int, str],
    n_dims: int | None = None,
) -> str:
    """
    Fill the wildcard positions of an existing filter key.

    Positions already set in ``base`` are never overwritten. A missing or
    ``ALL`` base is treated as a blank key and built from scratch, which
    requires ``n_dims``.

    Args:
        base: The caller's filter key.
        updates: Mapping of 1-based position to value.
        n_dims: Number of dimensions. Required when base is None or "ALL";
            otherwise a shorter base is padded to this length.

    Raises:
        ValidationError: If positions are invalid or n_dims is missing when needed.

    Example:
        >>> merge_filter("M..IT.....", {1: "Q", 7: "G_2024_01"})
        'M..IT....G_2024_01.'
    """
    if base is None or base.strip().upper() == WILDCARD_FILTER:
        if n_dims is None:
            raise ValidationError("n_dims must be a positive integer")
        return build_filter_key(n_dims, updates)

    parts = base.split(".")
    if n_dims is not None:
        n_dims = _check_n_dims(n_dims)
        if len(parts) < n_dims:
            parts.extend([""] * (n_dims - len(parts)))

    checked = _check_positions(len(parts), updates)
    for position, value in checked.items():
        if parts[position - 1] == "":
            parts[position - 1] = value
    return ".".join(parts)


def build_frequency_filter(frequency: str, n_dims: int, base: str | None = None) -> str:
    """
    Build a filter selecting one frequency (always the first dimension of ISTAT datasets).

    Unlike ``merge_filter``, the frequency replaces whatever the base holds at
    position 1.

    Example:
        >>> build_frequency_filter("Q", 4)
        'Q...'
        >>> build_frequency_filter("Q", 4, base="M..IT")
        'Q..IT'
    """
    if not frequency or not isinstance(frequency, str):
        raise ValidationError("frequency must be a non-empty string")
    n_dims = _check_n_dims(n_dims)

    if base is None or (is_wildcard_filter(base) and "." not in base):
        return frequency + "." * (n_dims - 1)

    parts = base.split(".")
    parts[0] = frequency
    return ".".join(parts)


# =============================================================================
# Editions
# =============================================================================


def parse_edition_date(code: str) -> date:
    """
    Convert an edition code into the date it refers to.

    Codes look like ``G_2024_01`` (month editions) or ``M_2024_01_15`` (with day).

    Raises:
        ValidationError: If the code does not follow the edition format.

    Example:
        >>> parse_edition_date("G_2024_01")
        datetime.date(2024, 1, 1)
    """
    match = _EDITION_PATTERN.match(code.strip()) if isinstance(code, str) else None
    if not match:
        raise ValidationError(f"Invalid edition code: '{code}'")
    year, month, day = match.groups()
    try:
        return date(int(year), int(month), int(day) if day else 1)
    except ValueError as e:
        raise ValidationError(f"Invalid edition code: '{code}' ({e})") from e


def determine_latest_edition(codes: Iterable[str]) -> str:
    """
    Return the chronologically latest edition code.

    Codes are compared as dates, never as strings.

    Raises:
        ValidationError: If no codes are given or one of them is malformed.

    Example:
        >>> determine_latest_edition(["G_2023_12", "G_2024_02", "G_2023_06"])
        'G_2024_02'
    """
    candidates = list(codes)
    if not candidates:
        raise ValidationError("At least one edition code is required")
    return max(candidates, key=parse_edition_date)


def find_edition_position(dimensions: Sequence[str]) -> int | None:
    """
    Return the 1-based position of the EDITION dimension, or None if the dataset has none.

    Example:
        >>> find_edition_position(["FREQ", "REF_AREA", "DATA_TYPE", "EDITION"])
        4
    """
    for index, dimension in enumerate(dimensions, start=1):
        if dimension.upper() == "EDITION":
            return index
    return None
