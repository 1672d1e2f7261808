from __future__ import annotations


def parse_command(command: str) -> tuple[str, list[str]]:
    """Split a command string into a program name and its arguments.

    Tokens are separated by runs of whitespace. Quotes and shell operators
    are not interpreted; every token is kept verbatim.
    """
    tokens = command.split()
    if not tokens:
        return "", []
    return tokens[0], tokens[1:]


def join_command(program: str, args: list[str] | tuple[str, ...]) -> str:
    return " ".join([program, *args]).strip()
