"""
Identifier Conventions
======================

Case conversion shared by every emitter. Interface names arrive in the
IDL's own conventions (PascalCase types, snake_case members) and each
target language re-cases them.

| Function       | "get_value"  | "HTTPClient"   |
|----------------|--------------|----------------|
| snake_case     | get_value    | http_client    |
| camel_case     | getValue     | httpClient     |
| pascal_case    | GetValue     | HTTPClient     |
| shouty_case    | GET_VALUE    | HTTP_CLIENT    |
"""

import re

_WORD_BOUNDARY = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+\d*|[A-Z]+\d*|\d+")


def split_words(name: str) -> list[str]:
    """Split an identifier into lowercase words."""
    words = []
    for part in re.split(r"[_\-\s]+", name):
        words.extend(w.lower() for w in _WORD_BOUNDARY.findall(part))
    return words


def snake_case(name: str) -> str:
    return "_".join(split_words(name))


def shouty_case(name: str) -> str:
    return snake_case(name).upper()


def pascal_case(name: str) -> str:
    # Names that are already PascalCase are kept as written
    if name and name[0].isupper() and "_" not in name:
        return name
    return "".join(w.capitalize() for w in split_words(name))


def camel_case(name: str) -> str:
    words = split_words(name)
    if not words:
        return name
    return words[0] + "".join(w.capitalize() for w in words[1:])


def escape_keyword(name: str, keywords: frozenset, style: str = "suffix") -> str:
    """
    Make an identifier safe in a language with reserved words.

    Args:
        name: The identifier
        keywords: The language's reserved words
        style: "suffix" appends an underscore, "backtick" quotes the name
    """
    if name not in keywords:
        return name
    if style == "backtick":
        return f"`{name}`"
    return f"{name}_"
