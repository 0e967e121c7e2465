"""
Console progress lines that survive terminals without emoji support.
"""

import sys


def safe_print(message: str):
    """Print ``message``, degrading characters the console encoding cannot show."""
    try:
        print(message)
    except UnicodeEncodeError:
        encoding = getattr(sys.stdout, "encoding", None) or "ascii"
        print(message.encode(encoding, errors="replace").decode(encoding, errors="replace"))
