import re
from typing import Iterable, Iterator, NamedTuple, Tuple, Union
from urllib.parse import unquote

ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_MALFORMED_PERCENT_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class DecodeResult(NamedTuple):
    """Outcome of a decode attempt.

    ``decoded`` is False when the input could not be decoded, in which case
    ``value`` is the input unchanged.
    """

    value: str
    decoded: bool


def repair_mojibake(name: str) -> DecodeResult:
    """Undo UTF-8 bytes having been read as Latin-1 text.

    Names that already hold characters outside Latin-1 were decoded correctly
    upstream and are returned untouched, as are byte sequences that are not
    valid UTF-8.
    """

    try:
        repaired = name.encode("latin-1").decode("utf-8")
    except UnicodeError:
        return DecodeResult(name, False)
    return DecodeResult(repaired, True)


def percent_decode(name: str) -> DecodeResult:
    """Decode ``%XX`` escapes, keeping *name* when any escape is malformed."""

    if "%" not in name:
        return DecodeResult(name, False)
    if _MALFORMED_PERCENT_ESCAPE.search(name):
        return DecodeResult(name, False)
    try:
        decoded = unquote(name, encoding="utf-8", errors="strict")
    except UnicodeDecodeError:
        return DecodeResult(name, False)
    return DecodeResult(decoded, True)


def sanitize_filename(name: str) -> str:
    return ILLEGAL_FILENAME_CHARS.sub("_", name)


def decode_display_name(raw_name: Union[str, bytes]) -> str:
    """Turn a client-supplied filename into the name shown to users."""

    if isinstance(raw_name, bytes):
        raw_name = raw_name.decode("latin-1")
    name = repair_mojibake(raw_name).value
    name = percent_decode(name).value
    return sanitize_filename(name)


def split_extension(name: str) -> Tuple[str, str]:
    """Split *name* into base and extension, treating dotfiles as extensionless."""

    index = name.rfind(".")
    if index <= 0 or not name.strip("."):
        return name, ""
    return name[:index], name[index:]


def candidate_names(name: str) -> Iterator[str]:
    """Yield *name*, then ``base(1)ext``, ``base(2)ext`` and so on."""

    yield name
    base, extension = split_extension(name)
    counter = 1
    while True:
        yield f"{base}({counter}){extension}"
        counter += 1


def resolve_storage_name(raw_name: Union[str, bytes], existing_names: Iterable[str]) -> str:
    """Return the first collision-free storage name for *raw_name*."""

    taken = set(existing_names)
    candidates = candidate_names(decode_display_name(raw_name))
    return next(candidate for candidate in candidates if candidate not in taken)
