"""
Token substitution table for preset strings.

Filter-chain entries and extra arguments may reference values that are
only known once a preset meets a concrete source and output target. The
table below is fixed; anything else in braces is an error, never passed
through silently.

    {input}          absolute input path
    {output}         output path of the final pass
    {output_dir}     directory containing the output
    {output_stem}    output file name without extension
    {container}      preset container name (mp4, mkv, ...)
    {map}            assembled map expressions, e.g. "0:0 0:1"
    {map:<ref>}      one resolved stream reference, e.g. {map:0:a:1} -> "0:2"
    {quality}        effective CRF/CQ value ("" in bitrate mode)
    {bitrate}        effective video bitrate ("" in quality modes)
    {width}          effective output width ("" if unscaled)
    {height}         effective output height ("" if unscaled)
    {filters}        assembled video filter chain (extra args only)
    {extra_args}     assembled extra-args string (reserved: rejected in both
                     filters and extra args, which are the only token sites)

A brace preceded by "%" is left alone so FFmpeg expansions such as
drawtext's %{pts} survive.
"""

import re
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import BuildError


TOKEN_PATTERN = re.compile(r"(?<!%)\{([a-z_]+)(?::([^{}]+))?\}")

TOKEN_TABLE: Dict[str, str] = {
    "input": "absolute input path",
    "output": "output path of the final pass",
    "output_dir": "directory containing the output",
    "output_stem": "output file name without extension",
    "container": "preset container name",
    "map": "assembled map expressions, or one resolved reference with {map:<ref>}",
    "quality": "effective CRF/CQ value",
    "bitrate": "effective video bitrate",
    "width": "effective output width",
    "height": "effective output height",
    "filters": "assembled video filter chain",
    "extra_args": "assembled extra-args string",
}

# Tokens that may carry an argument after a colon
ARGUMENT_TOKENS = frozenset({"map"})

# Tokens a string may not reference, by where the string lives
FILTERS_FORBIDDEN = frozenset({"filters", "extra_args"})
EXTRA_ARGS_FORBIDDEN = frozenset({"extra_args"})


class TokenError(BuildError):
    """Raised when a string references an unknown or disallowed token."""

    def __init__(self, token: str, text: str, reason: str = "unknown token"):
        self.token = token
        self.text = text
        self.reason = reason
        super().__init__(f"{reason}: {{{token}}} in {text!r}")


def find_tokens(text: str) -> List[Tuple[str, Optional[str]]]:
    """Return (name, argument) for every token in text, in order."""
    return [(m.group(1), m.group(2)) for m in TOKEN_PATTERN.finditer(text)]


def check_tokens(text: str, forbidden: Iterable[str] = ()) -> List[str]:
    """
    Structural token check, no substitution.

    Returns a list of human-readable problems (empty when clean).
    """
    forbidden = set(forbidden)
    problems = []
    for name, argument in find_tokens(text):
        if name not in TOKEN_TABLE:
            problems.append(f"unknown token {{{name}}}")
        elif name in forbidden:
            problems.append(f"token {{{name}}} is not allowed here")
        elif argument is not None and name not in ARGUMENT_TOKENS:
            problems.append(f"token {{{name}}} does not take an argument")
    return problems


def substitute(
    text: str,
    values: Mapping[str, str],
    resolve_map: Callable[[str], str],
    forbidden: Iterable[str] = (),
) -> str:
    """
    Replace every token in text.

    Args:
        text: String containing tokens
        values: Token name -> replacement for argument-less tokens
        resolve_map: Resolves the argument of {map:<ref>} to "0:N"
        forbidden: Token names not allowed in this string

    Raises:
        TokenError: Unknown, forbidden or malformed token
    """
    forbidden = set(forbidden)

    def _replace(match: "re.Match") -> str:
        name, argument = match.group(1), match.group(2)
        if name not in TOKEN_TABLE:
            raise TokenError(name, text)
        if name in forbidden:
            raise TokenError(name, text, reason="token not allowed here")
        if argument is not None:
            if name not in ARGUMENT_TOKENS:
                raise TokenError(name, text, reason="token does not take an argument")
            return resolve_map(argument)
        return values[name]

    return TOKEN_PATTERN.sub(_replace, text)
