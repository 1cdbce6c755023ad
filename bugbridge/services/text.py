"""Text cleanup applied to every body before it is stored locally"""

import unicodedata


def cleanup(text: str) -> str:
    """Normalize newlines, drop control characters (except newline and tab) and trim."""
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    kept = [
        ch
        for ch in normalized
        if ch in ("\n", "\t") or unicodedata.category(ch) != "Cc"
    ]
    return "".join(kept).strip()
