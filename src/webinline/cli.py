from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

import typer
from dotenv import load_dotenv

from .workflows import inliner
from .workflows.inline_config import DEFAULT_INLINE_ATTRIBUTE

Runner = Callable[..., Tuple[Optional[Exception], str]]

app = typer.Typer(no_args_is_help=True, help="Inline external resources into HTML or CSS documents.")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_mode(value: str) -> Union[bool, float]:
    raw = (value or "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    try:
        number = float(raw)
    except ValueError:
        raise typer.BadParameter(f"Expected true/false or a KB threshold, got {value!r}")
    if number < 0:
        raise typer.BadParameter("KB threshold must not be negative")
    return number


def _read_input(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        typer.echo(f"error: cannot read {path}: {exc}", err=True)
        raise typer.Exit(code=2)


def _emit(text: str, out: Optional[Path]) -> None:
    if out is None:
        sys.stdout.write(text)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")


def _run(runner: Runner, path: Path, options: Dict[str, Any], out: Optional[Path], verbose: bool) -> None:
    load_dotenv()
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    options["file_content"] = _read_input(path)
    if options.get("relative_to") is None:
        options["relative_to"] = str(path.parent)
    error, text = runner(options)
    if error is not None and not isinstance(error, inliner.InlineError):
        typer.echo(f"fatal: {error}", err=True)
        raise typer.Exit(code=3)
    _emit(text, out)
    if error is not None:
        typer.echo(f"error: {error}", err=True)
        raise typer.Exit(code=1)


@app.command("html")
def html_cmd(
    path: Path = typer.Argument(..., help="HTML document to inline."),
    relative_to: Optional[str] = typer.Option(None, "--relative-to", help="Base path or URL (default: the document's directory)."),
    images: str = typer.Option("false", "--images", help="true, false or a KB threshold."),
    svgs: str = typer.Option("false", "--svgs", help="Inline .svg images as markup: true, false or a KB threshold."),
    links: bool = typer.Option(True, "--links/--no-links", help="Inline stylesheet links."),
    scripts: bool = typer.Option(True, "--scripts/--no-scripts", help="Inline external scripts."),
    strict: bool = typer.Option(False, "--strict", help="Fail when any resource cannot be fetched."),
    inline_attribute: str = typer.Option(DEFAULT_INLINE_ATTRIBUTE, "--inline-attribute", help="Opt-in marker attribute."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the result here instead of stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Inline stylesheets, scripts and images of an HTML document."""
    options = {
        "relative_to": relative_to,
        "images": _parse_mode(images),
        "svgs": _parse_mode(svgs),
        "links": links,
        "scripts": scripts,
        "strict": strict,
        "inline_attribute": inline_attribute,
    }
    _run(inliner.html, path, options, out, verbose)


@app.command("css")
def css_cmd(
    path: Path = typer.Argument(..., help="CSS document to inline."),
    relative_to: Optional[str] = typer.Option(None, "--relative-to", help="Base path or URL (default: the document's directory)."),
    images: str = typer.Option("true", "--images", help="true, false or a KB threshold."),
    strict: bool = typer.Option(False, "--strict", help="Fail when any resource cannot be fetched."),
    inline_attribute: str = typer.Option(DEFAULT_INLINE_ATTRIBUTE, "--inline-attribute", help="Opt-in marker comment."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the result here instead of stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Inline url() references of a CSS document."""
    options = {
        "relative_to": relative_to,
        "images": _parse_mode(images),
        "strict": strict,
        "inline_attribute": inline_attribute,
    }
    _run(inliner.css, path, options, out, verbose)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
