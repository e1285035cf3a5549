# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Exceptions shared by the Kaspit service modules.

Invalid user input is reported with the built-in ``ValueError`` everywhere.
The two classes below cover the remaining cases:

- ``RecordNotFoundError``: a row addressed by id does not exist.
- ``AuthorizationError``:  a row exists but belongs to another company.

The CLI catches ValueError, LookupError and PermissionError at the top level,
so both classes subclass the matching built-in.
"""


class RecordNotFoundError(LookupError):
    """Raised when a row addressed by id does not exist."""

    def __init__(self, table: str, row_id: int):
        super().__init__(f"{table} #{row_id} not found.")
        self.table = table
        self.row_id = row_id


class AuthorizationError(PermissionError):
    """Raised when a row is accessed from outside its owning company."""
