from __future__ import annotations

"""Console rendering for the ``diffroom run`` command."""

from typing import Sequence

import typer

from diffroom.session.protocol import DiffEntry


def _printable(text: str) -> str:
    # Undecodable output bytes arrive as lone surrogates; show them as \xNN.
    try:
        return text.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")
    except UnicodeEncodeError:
        return text.encode("utf-8", "backslashreplace").decode("utf-8")


class ConsoleReporter:
    def info(self, text: str) -> None:
        typer.secho(text, fg=typer.colors.BLUE)

    def note(self, text: str) -> None:
        typer.secho(text, fg=typer.colors.BRIGHT_BLACK)

    def success(self, text: str, *, bold: bool = False) -> None:
        typer.secho(text, fg=typer.colors.GREEN, bold=bold)

    def highlight(self, text: str) -> None:
        typer.secho(text, fg=typer.colors.YELLOW)

    def prompt(self, text: str) -> None:
        typer.secho(text, fg=typer.colors.CYAN)

    def error(self, text: str) -> None:
        typer.secho(text, fg=typer.colors.RED, bold=True, err=True)

    def match(self, round_number: int, remaining: int) -> None:
        typer.secho(f"\nOutputs match! (round {round_number})", fg=typer.colors.GREEN, bold=True)
        typer.secho(f"{remaining} matching round(s) to go.", fg=typer.colors.MAGENTA)
        typer.secho("--------------------------------------", fg=typer.colors.MAGENTA)

    def mismatch(self, test_case: bytes, diffs: Sequence[DiffEntry]) -> None:
        typer.secho("\n--- MISMATCH FOUND! ---", fg=typer.colors.RED, bold=True)
        typer.secho("\nFailing Test Case Input:", fg=typer.colors.YELLOW, bold=True)
        typer.echo(test_case.decode("utf-8", "replace"))
        typer.secho("\nPairwise Diffs:", fg=typer.colors.YELLOW, bold=True)
        for entry in diffs:
            left, right = entry.users
            typer.secho(
                f"\n--- Diff between user {left} and user {right} ---",
                fg=typer.colors.CYAN,
                bold=True,
            )
            for line in entry.patch.split("\n"):
                self.patch_line(line)
        typer.secho("\n--- END OF SESSION ---", fg=typer.colors.RED, bold=True)

    def patch_line(self, line: str) -> None:
        line = _printable(line)
        if line.startswith("+") and not line.startswith("+++"):
            typer.secho(line, fg=typer.colors.GREEN)
        elif line.startswith("-") and not line.startswith("---"):
            typer.secho(line, fg=typer.colors.RED)
        elif line.startswith("@@"):
            typer.secho(line, fg=typer.colors.CYAN)
        else:
            typer.echo(line)


__all__ = ["ConsoleReporter"]
