"""Command line interface of the Dev Spaces Switcher (``dss``)."""

import configparser
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, NoReturn, Optional

import click
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from typer._completion_shared import get_completion_script

from . import ssh_keys
from .controllers.space_controller import SpaceController
from .errors import DssError
from .services.space_service import (
    DONE,
    FAILED,
    OUTCOME_DRY_RUN,
    OUTCOME_EMPTY,
    OUTCOME_FAILED,
    OUTCOME_NO_OP,
    OUTCOME_NOT_FOUND,
    OUTCOME_SWITCHED,
    SKIPPED,
    SwitchResult,
)
from .settings import load_settings, setup_logging
from .spaces import find_space

PROG_NAME = "dss"
COMPLETE_VAR = "_DSS_COMPLETE"
SHELLS = ("bash", "zsh", "fish")
GITHUB_KEYS_URL = "https://github.com/settings/keys"
ACTIVE_MARKER = "🔥"

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

app = typer.Typer(
    name=PROG_NAME,
    help="Dev Spaces Switcher (DSS): manage your development spaces easily.",
    add_completion=True,
    no_args_is_help=True,
)


def _error(msg: str) -> NoReturn:
    """Print an error message and exit."""
    err_console.print(f"[bold red]Error:[/bold red] {msg}")
    raise typer.Exit(1)


def _success(msg: str) -> None:
    console.print(f"[bold green]✓[/bold green] {msg}")


def _info(msg: str) -> None:
    console.print(f"[dim]→[/dim] {msg}")


def _warn(msg: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {msg}")


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn domain errors into a message and exit status 1."""
    try:
        yield
    except (DssError, ValueError, OSError) as exc:
        logger.info("Command failed: %s", exc, exc_info=True)
        _error(str(exc))


def _complete_space_names(ctx: typer.Context, incomplete: str) -> List[str]:
    # completion runs without the main callback, so honour --config here
    config_path = ctx.find_root().params.get("config")
    try:
        names = SpaceController.from_config(load_settings(config_path)).space_names()
    except (DssError, OSError, configparser.Error):
        return []
    return [name for name in names if name.lower().startswith(incomplete.lower())]


def _controller(ctx: typer.Context) -> SpaceController:
    return ctx.obj


def _choose_spaces(
    controller: SpaceController,
    message: str,
    multiple: bool = False,
    read_only: bool = False,
) -> List[str]:
    """Let the operator pick spaces from a numbered list.

    An empty answer or an interrupted prompt selects nothing.
    """
    config = controller.load(read_only)
    spaces = config["spaces"]
    if not spaces:
        return []
    for number, space in enumerate(spaces, 1):
        marker = f"{ACTIVE_MARKER} " if space["name"] == config.get("activeSpace") else ""
        console.print(
            f"  [cyan]{number}[/cyan]. {marker}{space['name']} "
            f"[dim]{space.get('email', '')} ({space.get('userName', '')})[/dim]"
        )
    try:
        answer = typer.prompt(message, default="", show_default=False)
    except click.exceptions.Abort:
        return []

    chosen: List[str] = []
    tokens = [t.strip() for t in answer.split(",")] if multiple else [answer.strip()]
    for token in tokens:
        if not token:
            continue
        if token.isdigit() and 1 <= int(token) <= len(spaces):
            chosen.append(spaces[int(token) - 1]["name"])
        else:
            chosen.append(token)
    return chosen


def _choose_space(
    controller: SpaceController, message: str, read_only: bool = False
) -> Optional[str]:
    chosen = _choose_spaces(controller, message, read_only=read_only)
    return chosen[0] if chosen else None


def _render_switch(result: SwitchResult) -> None:
    """Print the outcome of a switch attempt."""
    if result.outcome == OUTCOME_EMPTY:
        _warn(result.message)
    elif result.outcome == OUTCOME_NOT_FOUND:
        err_console.print(f"[bold red]Error:[/bold red] {result.message}")
    elif result.outcome == OUTCOME_NO_OP:
        _info(result.message)
    elif result.outcome == OUTCOME_DRY_RUN:
        console.print(f"[bold]Dry run:[/bold] {result.message}")
        for step in result.steps:
            console.print(f"  • {step.description}")
        console.print(f"  • Record \"{result.space}\" as the active space")
        _info("No changes were made.")
    elif result.outcome == OUTCOME_SWITCHED:
        for step in result.steps:
            console.print(f"  [green]✓[/green] {step.description}")
        _success(result.message)
    elif result.outcome == OUTCOME_FAILED:
        table = Table(title=f"Switch to {result.space}")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Details", overflow="fold")
        styles = {DONE: "green", FAILED: "bold red", SKIPPED: "dim"}
        for step in result.steps:
            style = styles.get(step.status, "")
            table.add_row(
                step.description,
                f"[{style}]{step.status}[/{style}]" if style else step.status,
                step.error or "",
            )
        console.print(table)
        err_console.print(f"[bold red]Error:[/bold red] {result.message}")
        if result.completed_steps:
            _warn(
                "Steps marked done stay applied and the active space was not "
                "changed; fix the problem and switch again."
            )


def _probe(controller: SpaceController, name: Optional[str]) -> bool:
    with _reported_errors():
        with console.status("Testing GitHub access..."):
            space_name, ok, message = controller.test_space(name)
    if ok:
        _success(f'Space "{space_name}" can access GitHub.')
        if message:
            console.print(f"[dim]{message}[/dim]")
    else:
        err_console.print(
            f'[bold red]Error:[/bold red] GitHub rejected the key of space "{space_name}".'
        )
        if message:
            err_console.print(f"[dim]{message}[/dim]")
    return ok


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to the settings file"
    ),
) -> None:
    """Manage your development spaces easily."""
    cfg = load_settings(config)
    setup_logging(cfg)
    ctx.obj = SpaceController.from_config(cfg)


@app.command("add")
def add(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(None, "--name", help="Space name"),
    email: Optional[str] = typer.Option(None, "--email", help="Git user.email"),
    user_name: Optional[str] = typer.Option(None, "--user-name", help="Git user.name"),
    generate_key: Optional[bool] = typer.Option(
        None, "--generate-key/--no-generate-key", help="Generate a new SSH key"
    ),
    switch: Optional[bool] = typer.Option(
        None, "--switch/--no-switch", help="Switch to the new space afterwards"
    ),
) -> None:
    """Add a new space."""
    controller = _controller(ctx)
    name = name or typer.prompt("Space name")
    email = email or typer.prompt("Email")
    user_name = user_name or typer.prompt("User name")
    if generate_key is None:
        generate_key = typer.confirm(
            "Do you want to generate a new SSH key for this space?", default=True
        )

    with _reported_errors():
        if generate_key:
            with console.status("Generating SSH key..."):
                space = controller.add_space(name, email, user_name, generate_key)
        else:
            space = controller.add_space(name, email, user_name, generate_key)

    if space["sshKeyPath"]:
        _info(f"Generated SSH key at: {space['sshKeyPath']}")
        try:
            controller.copy_public_key(space)
            _success("The public SSH key has been copied to your clipboard.")
        except (DssError, OSError) as exc:
            _warn(f"Failed to copy the public SSH key to the clipboard: {exc}")
        console.print(ssh_keys.read_public_key(space["sshKeyPath"]) or "", soft_wrap=True)
        _info(f"Add it to your GitHub account: {GITHUB_KEYS_URL}")
    _success(f'Space "{space["name"]}" added successfully.')

    if not space["sshKeyPath"]:
        _info(f"Attach a key later with: {PROG_NAME} edit \"{space['name']}\" --key <path>")
        return
    if switch is None:
        switch = typer.confirm(
            f'Do you want to switch to the newly added space "{space["name"]}" now?',
            default=True,
        )
    if switch:
        result = controller.switch_space(space["name"])
        _render_switch(result)


@app.command("list")
def list_spaces(ctx: typer.Context) -> None:
    """List all spaces."""
    controller = _controller(ctx)
    with _reported_errors():
        config = controller.load()
    if not config["spaces"]:
        _warn("No spaces have been added yet.")
        return

    table = Table(title="Your Spaces")
    table.add_column("Name", style="bold")
    table.add_column("Email")
    table.add_column("User Name")
    table.add_column("SSH Key", overflow="fold")
    for space in config["spaces"]:
        name = space["name"]
        if name == config.get("activeSpace"):
            name = f"{ACTIVE_MARKER} [green]{name}[/green]"
        table.add_row(
            name,
            space.get("email", ""),
            space.get("userName", ""),
            space.get("sshKeyPath") or "[dim]none[/dim]",
        )
    console.print(table)


@app.command("switch")
def switch_cmd(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(
        None, help="Space to switch to", autocompletion=_complete_space_names
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview changes without applying them"
    ),
    force: bool = typer.Option(
        False, "--force", help="Re-apply the settings of the already active space"
    ),
    test: Optional[bool] = typer.Option(
        None, "--test/--no-test", help="Test GitHub access after switching"
    ),
) -> None:
    """Switch to a specified space."""
    controller = _controller(ctx)
    if name is None:
        with _reported_errors():
            has_spaces = bool(controller.load(read_only=dry_run)["spaces"])
        if has_spaces:
            name = _choose_space(
                controller, "Please choose a space to switch to", read_only=dry_run
            )
            if name is None:
                _info("No space selected.")
                return

    with _reported_errors():
        result = controller.switch_space(name, dry_run=dry_run, force=force)
    _render_switch(result)
    if result.outcome in (OUTCOME_NOT_FOUND, OUTCOME_FAILED):
        raise typer.Exit(1)
    if result.outcome == OUTCOME_SWITCHED:
        if test is None:
            test = typer.confirm("Test GitHub access now?", default=False)
        if test:
            _probe(controller, result.space)


@app.command("remove")
def remove(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(
        None, help="Space to remove", autocompletion=_complete_space_names
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview what would be removed without removing it"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Remove a specified space."""
    controller = _controller(ctx)
    if name is None:
        name = _choose_space(controller, "Select a space to remove", read_only=dry_run)
        if name is None:
            _info("No space selected.")
            return

    with _reported_errors():
        if not dry_run:
            controller.load()
        plan = controller.remove_space(name, dry_run=True)
    if dry_run:
        console.print(f"[bold]Dry run:[/bold] would remove space '{plan['name']}'")
        for action in plan["actions"]:
            console.print(f"  • {action}")
        _info("No changes were made.")
        return

    if not yes and not typer.confirm(
        f"Are you sure you want to remove the space '{plan['name']}'? "
        "This action cannot be undone.",
        default=False,
    ):
        _info("Removal cancelled.")
        return

    with _reported_errors():
        result = controller.remove_space(name)
    if result["unload_error"]:
        _warn(f"Could not unload the SSH key from ssh-agent: {result['unload_error']}")
    _success(f"Space '{result['name']}' has been removed.")
    if result["sshKeyPath"]:
        _info(f"Key files were kept at {result['sshKeyPath']}")


@app.command("edit")
def edit(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(
        None, help="Space to modify", autocompletion=_complete_space_names
    ),
    new_name: Optional[str] = typer.Option(None, "--name", help="New space name"),
    email: Optional[str] = typer.Option(None, "--email", help="New Git user.email"),
    user_name: Optional[str] = typer.Option(None, "--user-name", help="New Git user.name"),
    key: Optional[str] = typer.Option(
        None, "--key", help="Path to a private key; an empty value detaches the key"
    ),
) -> None:
    """Modify an existing space."""
    controller = _controller(ctx)
    if name is None:
        name = _choose_space(controller, "Which space would you like to modify?")
        if name is None:
            _info("No space selected.")
            return

    if new_name is None and email is None and user_name is None and key is None:
        with _reported_errors():
            space = find_space(controller.load(), name)
        if space is None:
            _error(f'Space "{name}" not found')
        new_name = typer.prompt(f'New name for "{space["name"]}"', default=space["name"])
        email = typer.prompt("New email", default=space.get("email", ""))
        user_name = typer.prompt("New user name", default=space.get("userName", ""))

    with _reported_errors():
        result = controller.update_space(name, new_name, email, user_name, key)
    if not result["changed"]:
        _info("No changes made.")
        return
    for field_name, (old, new) in result["changed"].items():
        console.print(f"  {field_name}: [dim]{old or '-'}[/dim] → {new or '-'}")
    _success(f'Space "{result["space"]["name"]}" updated.')
    if result["drift"]:
        _warn(
            "This is the active space; run "
            f"`{PROG_NAME} switch \"{result['space']['name']}\" --force` to apply the changes."
        )


@app.command("test")
def check_access(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(
        None, help="Space to test (default: the active space)",
        autocompletion=_complete_space_names,
    ),
) -> None:
    """Test a space's access to GitHub."""
    if not _probe(_controller(ctx), name):
        raise typer.Exit(1)


@app.command("inspect")
def inspect(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(
        None, help="Space to inspect (default: the active space)",
        autocompletion=_complete_space_names,
    ),
) -> None:
    """Show detailed information about a space."""
    controller = _controller(ctx)
    with _reported_errors():
        details = controller.inspect_space(name)

    def _flag(value: Optional[bool]) -> str:
        if value is None:
            return "[yellow]unknown[/yellow]"
        return "[green]yes[/green]" if value else "[red]no[/red]"

    table = Table(show_header=False, title=f"Space: {details['name']}")
    table.add_column("Field", style="bold")
    table.add_column("Value", overflow="fold")
    table.add_row("Name", details["name"])
    table.add_row("Slug", details["slug"])
    table.add_row("Email", details.get("email", ""))
    table.add_row("User Name", details.get("userName", ""))
    table.add_row("Active", _flag(details["active"]))
    table.add_row("SSH Key", details.get("sshKeyPath") or "[dim]none[/dim]")
    table.add_row("Key File Exists", _flag(details["key_exists"]))
    table.add_row("Key Type", details["key_type"] or "-")
    table.add_row("Fingerprint", details["fingerprint"] or "-")
    table.add_row("Loaded In Agent", _flag(details["loaded_in_agent"]))
    table.add_row("SSH Config Uses Key", _flag(details["ssh_config_matches"]))
    console.print(table)
    if details["public_key"]:
        console.print(Panel(details["public_key"], title="Public key"))


@app.command("onboard")
def onboard(ctx: typer.Context) -> None:
    """Interactive onboarding for new users."""
    controller = _controller(ctx)
    console.print(
        Panel(
            "Dev Spaces Switcher keeps one Git identity and SSH key per space\n"
            "and switches your global Git and SSH setup between them.",
            title="Welcome to DSS",
        )
    )
    with _reported_errors():
        status = controller.onboarding_status()

    table = Table(title="Environment")
    table.add_column("Tool")
    table.add_column("Available")
    for tool, available in status["tools"].items():
        table.add_row(tool, "[green]yes[/green]" if available else "[red]no[/red]")
    console.print(table)
    missing = [tool for tool, available in status["tools"].items() if not available]
    if missing:
        _warn(f"Missing tools: {', '.join(missing)}. Switching spaces needs all of them.")

    if status["git_name"] or status["git_email"]:
        _info(
            f"Current global Git identity: {status['git_name'] or '-'} "
            f"<{status['git_email'] or '-'}>"
        )
    else:
        _info("No global Git identity is configured yet.")

    if status["space_count"] == 0:
        if typer.confirm("Create your first space now?", default=True):
            add(ctx, name=None, email=None, user_name=None, generate_key=None, switch=None)
    else:
        _info(
            f"You have {status['space_count']} space(s); active: "
            f"{status['active'] or 'none'}"
        )

    console.print()
    console.print("[bold]Next steps[/bold]")
    for command, purpose in (
        ("add", "Create a development space"),
        ("list", "View all your spaces"),
        ("switch", "Switch between spaces"),
        ("test", "Test GitHub access"),
    ):
        console.print(f"  • [cyan]{PROG_NAME} {command}[/cyan] - {purpose}")


@app.command("completion")
def completion(
    shell: Optional[str] = typer.Argument(None, help="Shell: bash, zsh or fish"),
) -> None:
    """Generate shell completion script (bash, zsh, fish)."""
    if shell is None:
        detected = Path(os.environ.get("SHELL", "bash")).name
        shell = typer.prompt(
            "Select your shell",
            type=click.Choice(SHELLS),
            default=detected if detected in SHELLS else "bash",
        )
    shell = shell.lower()
    if shell not in SHELLS:
        _error(f"Completion script for {shell} is not supported yet.")

    script = get_completion_script(
        prog_name=PROG_NAME, complete_var=COMPLETE_VAR, shell=shell
    )
    typer.echo(script)

    rc_files: Dict[str, str] = {
        "bash": "~/.bashrc",
        "zsh": "~/.zshrc",
        "fish": "~/.config/fish/completions/dss.fish",
    }
    if shell == "fish":
        hint = f"{PROG_NAME} completion fish > {rc_files['fish']}"
    else:
        hint = f'echo \'eval "$({PROG_NAME} completion {shell})"\' >> {rc_files[shell]}'
    err_console.print(f"[dim]# To enable completion run:[/dim] {hint}")


@app.command("batch")
def batch(
    ctx: typer.Context,
    names: Optional[List[str]] = typer.Argument(
        None, help="Spaces to switch through, in order", autocompletion=_complete_space_names
    ),
) -> None:
    """Batch operations for multiple spaces."""
    controller = _controller(ctx)
    if not names:
        names = _choose_spaces(
            controller,
            "Select spaces to switch between (comma separated names or numbers)",
            multiple=True,
        )
    if not names:
        _info("No spaces selected.")
        return
    _info(f"Selected {len(names)} spaces for batch switching.")

    def _continue(result: SwitchResult, remaining: int) -> bool:
        _info(f"Switching to: {result.space}")
        _render_switch(result)
        if remaining == 0:
            return True
        question = (
            "Continue with remaining spaces?" if not result.ok else "Continue to next space?"
        )
        try:
            return typer.confirm(question, default=True)
        except click.exceptions.Abort:
            return False

    with _reported_errors():
        results = controller.batch_switch(names, _continue)
    switched = sum(1 for r in results if r.outcome == OUTCOME_SWITCHED)
    _success(f"Batch operation completed! {switched} of {len(results)} switches applied.")


@app.command("export")
def export(
    ctx: typer.Context,
    names: Optional[List[str]] = typer.Argument(
        None, help="Spaces to export (default: all)", autocompletion=_complete_space_names
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Export file"),
) -> None:
    """Export space configuration."""
    with _reported_errors():
        path, count = _controller(ctx).export_spaces(names or None, output)
    _success(f"{count} spaces exported to {path}")
    _info("SSH keys are not included.")


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    input_file: Optional[Path] = typer.Option(None, "--input", "-i", help="Export file to read"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Import space configuration."""
    controller = _controller(ctx)
    with _reported_errors():
        new, skipped = controller.read_import(input_file)
    for name in skipped:
        _warn(f"Space '{name}' already exists - skipping.")
    if not new:
        _info("No new spaces to import.")
        return
    if not yes and not typer.confirm(f"Import {len(new)} new spaces?", default=True):
        _info("Import cancelled.")
        return

    with _reported_errors():
        imported, _ = controller.import_spaces(input_file)
    _success(f"{len(imported)} spaces imported.")
    _info(f"SSH keys need to be set up manually: {PROG_NAME} edit <space> --key <path>")


@app.command("bulk")
def bulk(
    ctx: typer.Context,
    spaces: Optional[List[str]] = typer.Option(
        None, "--space", "-s", help="Space to update (repeatable; default: all)",
        autocompletion=_complete_space_names,
    ),
    email_domain: Optional[str] = typer.Option(
        None, "--email-domain", help="Replace the e-mail domain"
    ),
    user_prefix: str = typer.Option("", "--user-prefix", help="Prefix for user names"),
    user_suffix: str = typer.Option("", "--user-suffix", help="Suffix for user names"),
    regenerate_keys: bool = typer.Option(
        False, "--regenerate-keys", help="Generate fresh SSH keys"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Bulk update operations for multiple spaces."""
    controller = _controller(ctx)
    args = (spaces or None, email_domain, user_prefix, user_suffix, regenerate_keys)
    with _reported_errors():
        if not dry_run:
            controller.load()
        plans = controller.bulk_update(*args, dry_run=True)
    pending = [p for p in plans if p["changes"] or p["regenerate_key"]]
    if not pending:
        _info("Nothing to update.")
        return

    table = Table(title="Bulk update")
    table.add_column("Space", style="bold")
    table.add_column("Change")
    table.add_column("Old")
    table.add_column("New")
    for plan in pending:
        for field_name, (old, new) in plan["changes"].items():
            table.add_row(plan["name"], field_name, old, new)
        if plan["regenerate_key"]:
            table.add_row(plan["name"], "sshKey", "", "regenerate")
    console.print(table)

    if dry_run:
        _info("Dry run: no changes were made.")
        return
    if not yes and not typer.confirm(f"Apply changes to {len(pending)} spaces?", default=True):
        _info("Bulk update cancelled.")
        return

    with _reported_errors():
        controller.bulk_update(*args, dry_run=False)
    _success(f"{len(pending)} spaces updated.")
    if any(p["active"] for p in pending):
        _warn(f"The active space changed; run `{PROG_NAME} switch --force` to apply it.")


def main() -> None:
    """Entry point for the ``dss`` command."""
    app(prog_name=PROG_NAME)


if __name__ == "__main__":
    main()
