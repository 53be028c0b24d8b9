"""CLI command modules for dockwatch.

Kept free of module-level engine imports: ``dockwatch.exceptions``
imports ``dockwatch.cli.exit_codes`` while it is itself being loaded.
"""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from dockwatch.database.repositories import RepositoryFactory


@contextmanager
def open_repositories(action: str) -> Iterator["RepositoryFactory"]:
    """Open repositories on the configured database, creating tables first.

    Database failures surface as PersistenceError.
    """
    from dockwatch.database.connection import create_tables, get_db_session
    from dockwatch.database.repositories import repository_scope

    with repository_scope(get_db_session, action) as repos:
        create_tables()
        yield repos
