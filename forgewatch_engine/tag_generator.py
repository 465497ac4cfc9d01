"""Image tag helpers.

A tag is made of a number part and a text part joined by the first ``-``:
``1.0.5-RELEASE`` splits into ``1.0.5`` and ``RELEASE``. Auto-increment bumps
the last dot-segment of the number part, and a branch prefix is prepended to
the text part so different branches can emit ``1.0.5-RELEASE`` and
``1.0.5-BETA`` independently.
"""
from typing import NamedTuple


class TagParts(NamedTuple):
    number: str
    text: str


def split_tag(tag: str) -> TagParts:
    tag = (tag or "").strip()
    if not tag:
        return TagParts("", "")
    if "-" in tag:
        number, text = tag.split("-", 1)
        return TagParts(number, text)
    if tag[0].isdigit():
        return TagParts(tag, "")
    return TagParts("", tag)


def join_tag(number: str, text: str) -> str:
    if not text:
        return number
    if not number:
        return text
    return f"{number}-{text}"


def increment_number(number: str) -> str:
    if not number:
        return "1"
    segments = number.split(".")
    last = segments[-1]
    if not last.isdigit():
        return f"{number}.1"
    # keep zero padding: "009" -> "010"
    segments[-1] = str(int(last) + 1).zfill(len(last))
    return ".".join(segments)


def next_tag(number: str, text: str, auto_increment: bool = False, prefix: str = "") -> str:
    new_number = increment_number(number) if auto_increment else (number or "")
    new_text = text or ""
    if prefix:
        new_text = f"{prefix}-{new_text}" if new_text else prefix
    return join_tag(new_number, new_text)
