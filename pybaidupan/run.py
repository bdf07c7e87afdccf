"""Command line interface for BaiduPan."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, TypeVar

import typer
from pydantic import ValidationError

from .client import BaiduPanClient
from .config import ClientConfig, load_config, save_config
from .errors import BaiduPanError
from .models import FileInformation
from .paths import split_path

T = TypeVar("T")

PASSWORD_ENV_VAR = "BAIDUPAN_PASSWORD"

app = typer.Typer(help="Manage files on BaiduPan.")


def _prompt_captcha(image: bytes) -> str | None:
    with tempfile.NamedTemporaryFile(prefix="baidupan-captcha-", suffix=".jpg", delete=False) as f:
        f.write(image)
    typer.echo(f"A captcha is required, the image was saved to {f.name}")
    answer = typer.prompt("Captcha", default="", show_default=False)
    return answer or None


def _run(ctx: typer.Context, operation: Callable[[BaiduPanClient], Awaitable[T]]) -> T:
    """Log in, run ``operation`` and log out."""
    options = ctx.obj
    password = options["password"] or typer.prompt("Password", hide_input=True)

    async def run() -> T:
        client = await BaiduPanClient.from_config(
            password,
            _prompt_captcha,
            config_path=options["config"],
            username=options["username"],
        )
        async with client:
            return await operation(client)

    try:
        return asyncio.run(run())
    except BaiduPanError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    except TimeoutError as e:
        typer.echo("Error: Timed out waiting for the captcha answer", err=True)
        raise typer.Exit(code=1) from e


def _format_item(item: FileInformation) -> str:
    kind = "d" if item.is_directory else "-"
    modified = item.date_modified.strftime("%Y-%m-%d %H:%M")
    return f"{kind} {item.size:>12} {modified} {item.name}"


def _new_name(path: str, name: str | None) -> str:
    return name or split_path(path)[1]


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to the config file."),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Account name."),
    password: Optional[str] = typer.Option(
        None, envvar=PASSWORD_ENV_VAR, help="Account password; prompted for if absent."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj.update(config=config, username=username, password=password)


@app.command()
def configure(
    ctx: typer.Context,
    username: str,
    cache_ttl: Optional[float] = typer.Option(None, help="Seconds to cache listings."),
    timeout: Optional[float] = typer.Option(None, help="HTTP timeout in seconds."),
) -> None:
    """Save the account name and settings to the config file."""
    try:
        current = load_config(ctx.obj["config"])
        updates: dict[str, object] = {"username": username}
        if cache_ttl is not None:
            updates["cache_ttl"] = cache_ttl
        if timeout is not None:
            updates["timeout"] = timeout
        path = save_config(
            ClientConfig.model_validate({**current.model_dump(), **updates}),
            ctx.obj["config"],
        )
    except (BaiduPanError, ValidationError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"Saved {path}")


@app.command()
def ls(ctx: typer.Context, path: str = typer.Argument("/")) -> None:
    """List a directory."""
    for item in _run(ctx, lambda client: client.list_directory(path)):
        typer.echo(_format_item(item))


@app.command()
def info(ctx: typer.Context, path: str) -> None:
    """Show information about a file or directory."""
    typer.echo(_format_item(_run(ctx, lambda client: client.get_item_information(path))))


@app.command()
def search(
    ctx: typer.Context,
    key: str,
    path: str = typer.Option("/", help="Directory to search in."),
    recursive: bool = typer.Option(False, "--recursive", "-r"),
) -> None:
    """Search files by name."""
    for item in _run(ctx, lambda client: client.search(path, key, recursive)):
        typer.echo(_format_item(item))


@app.command()
def quota(ctx: typer.Context) -> None:
    """Show the used and total space."""
    result = _run(ctx, lambda client: client.get_quota())
    typer.echo(f"{result.used_space} / {result.total_space} bytes used")


@app.command()
def mkdir(ctx: typer.Context, path: str) -> None:
    """Create a directory."""
    _run(ctx, lambda client: client.create_directory(path))


@app.command()
def mv(
    ctx: typer.Context,
    path: str,
    dest: str,
    name: Optional[str] = typer.Option(None, help="New name; defaults to the current one."),
) -> None:
    """Move a file or directory into another directory."""
    new_name = _new_name(path, name)
    _run(ctx, lambda client: client.move_item(path, dest, new_name))


@app.command()
def cp(
    ctx: typer.Context,
    path: str,
    dest: str,
    name: Optional[str] = typer.Option(None, help="New name; defaults to the current one."),
) -> None:
    """Copy a file or directory into another directory."""
    new_name = _new_name(path, name)
    _run(ctx, lambda client: client.copy_item(path, dest, new_name))


@app.command()
def rename(ctx: typer.Context, path: str, new_name: str) -> None:
    """Rename a file or directory."""
    _run(ctx, lambda client: client.rename_item(path, new_name))


@app.command()
def rm(ctx: typer.Context, path: str) -> None:
    """Delete a file or directory."""
    _run(ctx, lambda client: client.delete_item(path))


@app.command()
def get(
    ctx: typer.Context,
    path: str,
    local_path: Optional[Path] = typer.Argument(None),
    start: Optional[int] = typer.Option(None, help="First byte to download."),
    end: Optional[int] = typer.Option(None, help="Last byte to download."),
) -> None:
    """Download a file."""
    target = local_path or Path(split_path(path)[1])
    byte_range = None if start is None and end is None else (start or 0, end)

    async def download(client: BaiduPanClient) -> int:
        written = 0
        with target.open("wb") as f:
            async for chunk in client.download_file(path, byte_range):
                f.write(chunk)
                written += len(chunk)
        return written

    typer.echo(f"Downloaded {_run(ctx, download)} bytes to {target}")


@app.command()
def put(
    ctx: typer.Context,
    local_path: Path,
    path: str,
    overwrite: bool = typer.Option(False, "--overwrite"),
    slice_size: Optional[int] = typer.Option(
        None, min=1, help="Upload in slices of this many bytes."
    ),
) -> None:
    """Upload a file."""
    if not local_path.is_file():
        typer.echo(f"Error: No file found at '{local_path}'", err=True)
        raise typer.Exit(code=1)

    async def upload(client: BaiduPanClient) -> None:
        if slice_size is None or local_path.stat().st_size <= slice_size:
            with local_path.open("rb") as f:
                await client.upload_file(path, f, overwrite)
            return

        slices = []
        with local_path.open("rb") as f:
            while chunk := f.read(slice_size):
                slices.append(await client.upload_file_slice(chunk))
        await client.concat_file_slices(path, slices, overwrite)

    _run(ctx, upload)
    typer.echo(f"Uploaded {local_path} to {path}")


if __name__ == "__main__":
    app()
