"""
File name utilities for download URLs.

Download URLs carry a Content-Disposition header (RFC 6266) that Azure returns
along with the blob, so the browser saves it under a readable name. The name
is user-provided and must be sanitized first.
"""
from __future__ import annotations

import os
import re
from typing import Optional, Tuple

__all__ = ["sanitize_file_name", "content_disposition"]

# Characters not allowed in file names; each run collapses into a single '-'
_BAD_CHARACTERS = re.compile(r'[\x00-\x1F\x7F/\\?%*:|"<>-]+')

# Bytes that RFC 5987 allows verbatim in an ext-value
_RFC5987_UNRESERVED = frozenset(
    b"abcdefghijklmnopqrstuvwxyz"
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"0123456789"
    b"!#$+-.^_`|~"
)


def sanitize_file_name(filename: str) -> Tuple[str, Optional[str]]:
    """
    Sanitize a file name for the Content-Disposition header.

    Rules:
    - Empty, whitespace-only and extension-only names (".tsv") get a "data" prefix
    - Each run of forbidden characters becomes a single '-'
    - Leading and trailing '-' and '.' are dropped
    - Non-ASCII names get a dummy ASCII fallback ``data<ext>`` plus the full
      name percent-encoded per RFC 5987 (without the ``UTF-8''`` prefix)

    Args:
        filename: User-provided file name

    Returns:
        Tuple of (ascii_name, utf8_name); utf8_name is None for ASCII-only names

    Examples:
        >>> sanitize_file_name("|/the*<-file.tsv.")
        ('the-file.tsv', None)

        >>> sanitize_file_name("données.tsv")
        ('data.tsv', 'donn%c3%a9es.tsv')
    """
    if not filename.strip() or filename.startswith("."):
        filename = "data" + filename

    filename = _BAD_CHARACTERS.sub("-", filename).strip("-.")

    if not filename:
        return "data", None

    if all(ord(c) < 127 for c in filename):
        return filename, None

    utf8 = "".join(
        chr(b) if b in _RFC5987_UNRESERVED else f"%{b:02x}"
        for b in filename.encode("utf-8")
    )

    ext = os.path.splitext(filename)[1]
    if ext == ".gz":
        ext = ".csv.gz"

    return "data" + ext, utf8


def content_disposition(filename: str) -> str:
    """
    Build an ``attachment`` Content-Disposition value for ``filename``.

    ASCII names use ``filename="..."``. Other names keep an ASCII fallback for
    old browsers and add ``filename*=UTF-8''...`` for modern ones.
    """
    ascii_name, utf8_name = sanitize_file_name(filename)
    if utf8_name is None:
        return f'attachment;filename="{ascii_name}"'
    return f'attachment;filename="{ascii_name}";filename*=UTF-8\'\'{utf8_name}'
