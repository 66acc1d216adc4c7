"""Librarian: watches the launcher version manifest and keeps a local library.

Polls the published manifest, detects added, changed and removed versions,
mirrors missing artifacts to disk and runs user-defined commands when
specific kinds of change occur.
"""

__version__ = "1.0.0"
__app_name__ = "Librarian"
