"""
IDL Lexer (Tokenizer)
=====================

Converts interface-definition text into a stream of tokens for the
parser.

Token Categories
----------------
- Keywords: namespace, dictionary, enum, interface, callback, typedef,
  constructor, sequence, record, void, true, false, null
- Identifiers: item, member, argument and primitive type names
- Numbers: decimal and hexadecimal integers, floats, with optional sign
- Strings: "double quoted" with \\n, \\t, \\", \\\\ escapes
- Punctuation: { } ( ) [ ] < > , ; = ?
- Doc comments: /// lines, kept as tokens so the parser can attach them

Comments
--------
- Single-line: // comment
- Multi-line: /* comment */

Example Usage
-------------
>>> from ffibridge.idl.lexer import IdlLexer
>>> tokens = list(IdlLexer('namespace math { u32 add(u32 a, u32 b); };').tokenize())
>>> tokens[0]
Token(NAMESPACE, 'namespace', 1:1)
"""

import string
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, Optional

from ffibridge.errors import IdlSyntaxError, SourceLocation


# =============================================================================
# Token Type Enumeration
# =============================================================================

class IdlTokenType(Enum):
    """Token types for the interface-definition language."""

    # === Structural Tokens ===
    EOF = auto()
    DOC_COMMENT = auto()    # /// text

    # === Identifiers and Literals ===
    IDENTIFIER = auto()
    INTEGER = auto()
    FLOAT = auto()
    STRING = auto()

    # === Keywords ===
    NAMESPACE = auto()
    DICTIONARY = auto()
    ENUM = auto()
    INTERFACE = auto()
    CALLBACK = auto()
    TYPEDEF = auto()
    CONSTRUCTOR = auto()
    SEQUENCE = auto()
    RECORD = auto()
    VOID = auto()
    TRUE = auto()
    FALSE = auto()
    NULL = auto()

    # === Punctuation ===
    LBRACE = auto()         # {
    RBRACE = auto()         # }
    LPAREN = auto()         # (
    RPAREN = auto()         # )
    LBRACKET = auto()       # [
    RBRACKET = auto()       # ]
    LT = auto()             # <
    GT = auto()             # >
    COMMA = auto()          # ,
    SEMICOLON = auto()      # ;
    EQUALS = auto()         # =
    QUESTION = auto()       # ?


KEYWORDS: dict[str, IdlTokenType] = {
    "namespace": IdlTokenType.NAMESPACE,
    "dictionary": IdlTokenType.DICTIONARY,
    "enum": IdlTokenType.ENUM,
    "interface": IdlTokenType.INTERFACE,
    "callback": IdlTokenType.CALLBACK,
    "typedef": IdlTokenType.TYPEDEF,
    "constructor": IdlTokenType.CONSTRUCTOR,
    "sequence": IdlTokenType.SEQUENCE,
    "record": IdlTokenType.RECORD,
    "void": IdlTokenType.VOID,
    "true": IdlTokenType.TRUE,
    "false": IdlTokenType.FALSE,
    "null": IdlTokenType.NULL,
}

PUNCTUATION: dict[str, IdlTokenType] = {
    "{": IdlTokenType.LBRACE,
    "}": IdlTokenType.RBRACE,
    "(": IdlTokenType.LPAREN,
    ")": IdlTokenType.RPAREN,
    "[": IdlTokenType.LBRACKET,
    "]": IdlTokenType.RBRACKET,
    "<": IdlTokenType.LT,
    ">": IdlTokenType.GT,
    ",": IdlTokenType.COMMA,
    ";": IdlTokenType.SEMICOLON,
    "=": IdlTokenType.EQUALS,
    "?": IdlTokenType.QUESTION,
}


# =============================================================================
# Token Data Class
# =============================================================================

@dataclass(frozen=True)
class IdlToken:
    """
    A single token with its position.

    Attributes:
        type: The IdlTokenType classification
        value: Text for identifiers/keywords/strings, number for numerics
        line: Line number in source (1-indexed)
        column: Column number in source (1-indexed)
        filename: Name of the source file
    """
    type: IdlTokenType
    value: str | int | float | None
    line: int
    column: int
    filename: str

    def __repr__(self) -> str:
        if self.value is not None:
            return f"Token({self.type.name}, {self.value!r}, {self.line}:{self.column})"
        return f"Token({self.type.name}, {self.line}:{self.column})"

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.filename, self.line, self.column)

    @property
    def is_word(self) -> bool:
        """True for identifiers and keywords (anything spelled with letters)."""
        return self.type == IdlTokenType.IDENTIFIER or self.type.name.lower() in KEYWORDS


# =============================================================================
# Lexer Implementation
# =============================================================================

class IdlLexer:
    """
    Tokenizes interface-definition source.

    Usage:
        lexer = IdlLexer(source_text, filename)
        tokens = list(lexer.tokenize())
    """

    IDENT_START = string.ascii_letters + "_"
    IDENT_CHARS = string.ascii_letters + string.digits + "_"

    ESCAPE_SEQUENCES = {
        "n": "\n",
        "t": "\t",
        "r": "\r",
        "\\": "\\",
        '"': '"',
        "0": "\0",
    }

    def __init__(self, source: str, filename: str = "<input>"):
        self.source = source
        self.filename = filename
        self._pos = 0
        self._line = 1
        self._column = 1
        self._line_start_pos = 0

    def tokenize(self) -> Iterator[IdlToken]:
        """
        Generate tokens from the source.

        Yields:
            IdlToken objects, always ending with EOF

        Raises:
            IdlSyntaxError: On characters or literals that cannot be tokenized
        """
        while True:
            doc = self._skip_whitespace_and_comments()
            if doc is not None:
                yield doc
                continue
            if self._at_end():
                break
            yield self._scan_token()

        yield IdlToken(IdlTokenType.EOF, None, self._line, self._column, self.filename)

    # =========================================================================
    # Character Access
    # =========================================================================

    def _at_end(self) -> bool:
        return self._pos >= len(self.source)

    def _peek(self, offset: int = 0) -> str:
        pos = self._pos + offset
        if pos >= len(self.source):
            return ""
        return self.source[pos]

    def _advance(self) -> str:
        if self._at_end():
            return ""
        char = self.source[self._pos]
        self._pos += 1
        if char == "\n":
            self._line += 1
            self._column = 1
            self._line_start_pos = self._pos
        else:
            self._column += 1
        return char

    def current_line_text(self) -> str:
        line_end = self.source.find("\n", self._line_start_pos)
        if line_end == -1:
            line_end = len(self.source)
        return self.source[self._line_start_pos:line_end]

    def _error(
        self,
        message: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> IdlSyntaxError:
        location = SourceLocation(self.filename, line or self._line, column or self._column)
        return IdlSyntaxError(
            message,
            location=location,
            hint=hint,
            source_line=self.current_line_text(),
        )

    # =========================================================================
    # Whitespace and Comments
    # =========================================================================

    def _skip_whitespace_and_comments(self) -> Optional[IdlToken]:
        """Skip whitespace and comments, returning a doc-comment token if one is found."""
        while not self._at_end():
            char = self._peek()

            if char in " \t\r\n":
                self._advance()
                continue

            if char == "/" and self._peek(1) == "/":
                if self._peek(2) == "/" and self._peek(3) != "/":
                    return self._scan_doc_comment()
                while not self._at_end() and self._peek() != "\n":
                    self._advance()
                continue

            if char == "/" and self._peek(1) == "*":
                start_line, start_column = self._line, self._column
                self._advance()
                self._advance()
                while not (self._peek() == "*" and self._peek(1) == "/"):
                    if self._at_end():
                        raise self._error(
                            "unterminated comment",
                            line=start_line,
                            column=start_column,
                            hint="add '*/' to close the comment",
                        )
                    self._advance()
                self._advance()
                self._advance()
                continue

            break
        return None

    def _scan_doc_comment(self) -> IdlToken:
        line, column = self._line, self._column
        for _ in range(3):
            self._advance()
        start = self._pos
        while not self._at_end() and self._peek() != "\n":
            self._advance()
        text = self.source[start:self._pos]
        if text.startswith(" "):
            text = text[1:]
        return IdlToken(IdlTokenType.DOC_COMMENT, text.rstrip(), line, column, self.filename)

    # =========================================================================
    # Token Scanning
    # =========================================================================

    def _scan_token(self) -> IdlToken:
        line, column = self._line, self._column
        char = self._peek()

        if char in self.IDENT_START:
            return self._scan_word(line, column)

        if char.isdigit() or (char in "-+" and (self._peek(1).isdigit() or self._peek(1) == ".")):
            return self._scan_number(line, column)

        if char == '"':
            return self._scan_string(line, column)

        if char in PUNCTUATION:
            self._advance()
            return IdlToken(PUNCTUATION[char], char, line, column, self.filename)

        raise self._error(f"invalid character '{char}' (0x{ord(char):02X})")

    def _scan_word(self, line: int, column: int) -> IdlToken:
        start = self._pos
        while self._peek() and self._peek() in self.IDENT_CHARS:
            self._advance()
        text = self.source[start:self._pos]
        token_type = KEYWORDS.get(text, IdlTokenType.IDENTIFIER)
        return IdlToken(token_type, text, line, column, self.filename)

    def _scan_number(self, line: int, column: int) -> IdlToken:
        start = self._pos
        if self._peek() in "-+":
            self._advance()

        if self._peek() == "0" and self._peek(1) in "xX":
            self._advance()
            self._advance()
            while self._peek() and self._peek() in string.hexdigits:
                self._advance()
            text = self.source[start:self._pos]
            try:
                return IdlToken(IdlTokenType.INTEGER, int(text, 16), line, column, self.filename)
            except ValueError:
                raise self._error(f"invalid hexadecimal number '{text}'", line, column) from None

        is_float = False
        while self._peek() and (self._peek().isdigit() or self._peek() in ".eE"):
            if self._peek() in ".eE":
                is_float = True
                if self._peek() in "eE" and self._peek(1) in "-+":
                    self._advance()
            self._advance()

        text = self.source[start:self._pos]
        try:
            if is_float:
                return IdlToken(IdlTokenType.FLOAT, float(text), line, column, self.filename)
            return IdlToken(IdlTokenType.INTEGER, int(text, 10), line, column, self.filename)
        except ValueError:
            raise self._error(f"invalid number '{text}'", line, column) from None

    def _scan_string(self, line: int, column: int) -> IdlToken:
        self._advance()
        chars = []
        while True:
            char = self._peek()
            if char == "" or char == "\n":
                raise self._error(
                    "unterminated string literal",
                    line=line,
                    column=column,
                    hint="add closing '\"' to complete the string",
                )
            self._advance()
            if char == '"':
                break
            if char == "\\":
                escape = self._advance()
                if escape not in self.ESCAPE_SEQUENCES:
                    raise self._error(f"unknown escape sequence '\\{escape}'")
                chars.append(self.ESCAPE_SEQUENCES[escape])
            else:
                chars.append(char)
        return IdlToken(IdlTokenType.STRING, "".join(chars), line, column, self.filename)
