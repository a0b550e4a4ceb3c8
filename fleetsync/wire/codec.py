"""Escaping for strings embedded in comma- and newline-delimited records."""

import re

_INTEGER = re.compile(r"-?\d+", re.ASCII)

_ESCAPES = {
    "$": "$$",
    ",": "$k",
    "\n": "$n",
    "\r": "$r",
}
_UNESCAPES = {escaped[1]: raw for raw, escaped in _ESCAPES.items()}


class MalformedRecordError(ValueError):
    """Raised when a wire record or escaped field cannot be decoded."""


def encode(text: str) -> str:
    """Escape ``$``, comma, newline and carriage return."""
    return "".join(_ESCAPES.get(ch, ch) for ch in text)


def decode(text: str) -> str:
    """Reverse :func:`encode`.

    Raises:
        MalformedRecordError: On an unknown escape or a trailing lone ``$``.
    """
    if "$" not in text:
        return text

    result = []
    chars = iter(text)
    for ch in chars:
        if ch != "$":
            result.append(ch)
            continue
        code = next(chars, None)
        if code is None:
            raise MalformedRecordError(f"Dangling escape at end of {text!r}")
        try:
            result.append(_UNESCAPES[code])
        except KeyError:
            raise MalformedRecordError(
                f"Unknown escape '${code}' in {text!r}"
            ) from None
    return "".join(result)


def parse_int(text: str) -> int:
    """Parse a plain decimal integer field.

    Raises:
        MalformedRecordError: If the field is not an optionally signed run of
            ASCII digits.
    """
    if not _INTEGER.fullmatch(text):
        raise MalformedRecordError(f"Not a number: {text!r}")
    return int(text)
