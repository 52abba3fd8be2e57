"""Text normalisation shared by the status parser and station matching."""

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    """
    Fold a string for accent- and case-insensitive comparison.

    Diacritics are stripped (``č`` -> ``c``, ``đ`` -> ``d``), the text is
    lowercased, hyphens become spaces and runs of whitespace collapse to one.

    Examples:
        >>> normalize_text("Završio je  vožnju")
        'zavrsio je voznju'
        >>> normalize_text("ZAGREB-GL.KOL.")
        'zagreb gl.kol.'
    """
    text = str(value or "")
    # đ has no decomposition in NFKD
    text = text.replace("đ", "d").replace("Đ", "D")
    normalized = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in normalized if not unicodedata.combining(ch)).lower()
    text = text.replace("-", " ")
    return _WHITESPACE_RE.sub(" ", text).strip()
