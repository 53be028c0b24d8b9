"""dockwatch users command - Manage the accounts the engine evaluates."""

import typer
from rich.console import Console

from dockwatch.cli.error_handler import handle_errors
from dockwatch.cli.output import print_json, print_table
from dockwatch.database.models import User
from dockwatch.database.repositories import RepositoryFactory
from dockwatch.exceptions import NotFoundError, ValidationError

app = typer.Typer(help="Manage users.")
console = Console()


def resolve_user(repos: RepositoryFactory, user: str) -> User:
    """Find a user by numeric id or username.

    Raises:
        NotFoundError: If no such user exists
    """
    found = None
    if user.isdigit():
        found = repos.users.get_by_id(int(user))
    if found is None:
        found = repos.users.get_by_username(user)
    if found is None:
        raise NotFoundError(f"User not found: {user}")
    return found


@app.command("add")
@handle_errors
def add_user(
    username: str = typer.Argument(..., help="Unique username."),
) -> None:
    """Add a user.

    Example:
        dockwatch users add alice
    """
    from dockwatch.cli import open_repositories

    if not username.strip():
        raise ValidationError("Username must not be empty")

    with open_repositories("create user") as repos:
        if repos.users.get_by_username(username):
            raise ValidationError(f"User already exists: {username}")
        user = repos.users.create(username)

    console.print(f"[green]✓[/green] User created: {user.username} (id {user.id})")


@app.command("list")
@handle_errors
def list_users(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List users.

    Example:
        dockwatch users list
    """
    from dockwatch.cli import open_repositories

    with open_repositories("load users") as repos:
        users = [u.to_dict() for u in repos.users.get_all()]

    if json_output:
        print_json(users)
        return
    if not users:
        console.print("[dim]No users. Add one with 'dockwatch users add NAME'.[/dim]")
        return
    print_table(users, ["id", "username", "created_at"], title="Users", column_styles={"id": "cyan"})
