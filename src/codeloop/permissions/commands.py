"""Shell command parsing used by permission rules."""

from __future__ import annotations

import shlex

# Commands whose second word selects a distinct action worth its own grant.
_SUBCOMMAND_TOOLS = frozenset({
    "git", "npm", "pnpm", "yarn", "docker", "kubectl", "cargo", "go", "pip", "uv",
    "poetry", "make", "bun", "gh",
})


def split_command(command: str) -> list[str]:
    """Split a compound command on `&&`, `||`, `;`, `|` and `&`, outside of quotes.

    The `&` of a redirect such as ``2>&1`` or ``&>`` does not split.
    """
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(command):
        ch = command[i]
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif command.startswith(("&&", "||"), i):
            parts.append("".join(current))
            current = []
            i += 1
        elif ch in (";", "|", "\n") or (
            ch == "&" and not command.startswith("&>", i) and not (current and current[-1] in "<>")
        ):
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def substitutions(command: str) -> list[str]:
    """Bodies of the `$(...)` and backtick substitutions in *command*.

    Single-quoted text is skipped. An unterminated substitution runs to the
    end of the command.
    """
    bodies: list[str] = []
    i = 0
    while i < len(command):
        if command[i] == "'":
            end = command.find("'", i + 1)
            i = len(command) if end == -1 else end + 1
        elif command.startswith("$(", i):
            depth, j = 1, i + 2
            while j < len(command) and depth:
                if command[j] == "(":
                    depth += 1
                elif command[j] == ")":
                    depth -= 1
                j += 1
            bodies.append(command[i + 2 : j - 1] if depth == 0 else command[i + 2 :])
            i = j
        elif command[i] == "`":
            end = command.find("`", i + 1)
            end = len(command) if end == -1 else end
            bodies.append(command[i + 1 : end])
            i = end + 1
        else:
            i += 1
    return bodies


def command_segments(command: str) -> list[str]:
    """Every simple command in *command*, including those run by substitutions."""
    segments: list[str] = []
    for part in split_command(command):
        segments.append(part)
        for body in substitutions(part):
            segments.extend(command_segments(body))
    return segments


def has_operators(command: str) -> bool:
    if "$(" in command or "`" in command or "\n" in command.strip():
        return True
    try:
        tokens = list(shlex.shlex(command, posix=True, punctuation_chars=True))
    except ValueError:
        return True
    return any(tok[0] in "&|;<>" for tok in tokens if tok)


def get_command_prefix(command: str) -> str | None:
    """Stable prefix of a simple command, used for "always allow" grants.

    ``git commit -m x`` gives ``git commit``, ``ls -la`` gives ``ls``.
    Returns None for compound commands, where a prefix grant would also
    cover the other parts.
    """
    command = command.strip()
    if not command or has_operators(command):
        return None
    try:
        words = shlex.split(command)
    except ValueError:
        return None
    if not words:
        return None
    # Leading VAR=value assignments are part of the prefix.
    idx = 0
    while idx < len(words) and "=" in words[idx] and not words[idx].startswith("-"):
        idx += 1
    if idx >= len(words):
        return None
    head = words[: idx + 1]
    if words[idx] in _SUBCOMMAND_TOOLS and idx + 1 < len(words) and not words[idx + 1].startswith("-"):
        head.append(words[idx + 1])
    return " ".join(head)
