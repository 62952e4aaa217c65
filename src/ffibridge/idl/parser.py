"""
IDL Parser
==========

Recursive descent parser building an ``IdlFile`` syntax tree from
tokens. It checks structure only: attribute meaning and type names are
left to semantic lowering, so an unknown type name is not a parse error.

Grammar Summary
---------------
    file        := definition*
    definition  := attributes? (namespace | dictionary | enum
                                | interface | callback | typedef)
    namespace   := "namespace" IDENT "{" (attributes? operation)* "}" ";"
    dictionary  := "dictionary" IDENT "{" (attributes? type IDENT ("=" literal)? ";")* "}" ";"
    enum        := "enum" IDENT "{" STRING ("," STRING)* ","? "}" ";"
    interface   := "interface" IDENT "{" member* "}" ";"
    member      := attributes? ("constructor" "(" params? ")" ";" | operation)
    callback    := "callback" "interface" IDENT "{" (attributes? operation)* "}" ";"
    typedef     := "typedef" KIND IDENT ";"
    operation   := return_type? IDENT "(" params? ")" ";"
    params      := param ("," param)*
    param       := attributes? type IDENT ("=" literal)?
    type        := (IDENT | "sequence" "<" type ">" | "record" "<" type "," type ">") "?"?

Doc comments (``///``) preceding a definition or member become its
docstring.

Example
-------
>>> from ffibridge.idl.parser import parse_idl
>>> tree = parse_idl('namespace math { i32 add(i32 a, i32 b); };')
>>> tree.namespaces[0].functions[0].name
'add'
"""

import logging
from typing import Optional

from ffibridge.errors import IdlSyntaxError
from ffibridge.idl.lexer import IdlLexer, IdlToken, IdlTokenType
from ffibridge.idl.syntax import (
    Attribute,
    AttributeList,
    CallbackDecl,
    ConstructorDecl,
    DictionaryDecl,
    EnumDecl,
    FieldDecl,
    IdlFile,
    InterfaceDecl,
    LiteralExpr,
    NamespaceDecl,
    OperationDecl,
    ParamDecl,
    TypedefDecl,
    TypeExpr,
)

logger = logging.getLogger(__name__)

TYPEDEF_KINDS = ("extern", "dictionary", "enum", "interface", "callback")


class IdlParser:
    """
    Parses a token stream into an IdlFile.

    Usage:
        parser = IdlParser(tokens, source_text, filename)
        tree = parser.parse()
    """

    def __init__(self, tokens: list[IdlToken], source: str = "", filename: str = "<input>"):
        self.filename = filename
        self._source_lines = source.splitlines()
        self._tokens: list[IdlToken] = []
        self._docs: dict[int, str] = {}
        self._pos = 0

        # Attach runs of doc comments to the next real token
        pending: list[str] = []
        for token in tokens:
            if token.type == IdlTokenType.DOC_COMMENT:
                pending.append(str(token.value))
                continue
            if pending:
                self._docs[len(self._tokens)] = "\n".join(pending)
                pending = []
            self._tokens.append(token)

    def parse(self) -> IdlFile:
        """
        Parse the whole file.

        Raises:
            IdlSyntaxError: On the first structural error
        """
        tree = IdlFile(self.filename)
        while not self._check(IdlTokenType.EOF):
            tree.definitions.append(self._parse_definition())
        logger.debug(f"Parsed {len(tree.definitions)} definitions from {self.filename}")
        return tree

    # =========================================================================
    # Token Access
    # =========================================================================

    def _peek(self, offset: int = 0) -> IdlToken:
        pos = self._pos + offset
        if pos >= len(self._tokens):
            return self._tokens[-1]
        return self._tokens[pos]

    def _advance(self) -> IdlToken:
        token = self._peek()
        if token.type != IdlTokenType.EOF:
            self._pos += 1
        return token

    def _check(self, *types: IdlTokenType) -> bool:
        return self._peek().type in types

    def _match(self, *types: IdlTokenType) -> Optional[IdlToken]:
        if self._check(*types):
            return self._advance()
        return None

    def _expect(self, token_type: IdlTokenType, what: str) -> IdlToken:
        if self._check(token_type):
            return self._advance()
        raise self._error(f"expected {what}, found {self._describe(self._peek())}")

    def _expect_name(self, what: str) -> IdlToken:
        """Accept an identifier, or a keyword used as a name."""
        token = self._peek()
        if token.is_word and token.type not in (IdlTokenType.TRUE, IdlTokenType.FALSE, IdlTokenType.NULL):
            return self._advance()
        raise self._error(f"expected {what}, found {self._describe(token)}")

    def _take_doc(self) -> Optional[str]:
        return self._docs.get(self._pos)

    def _describe(self, token: IdlToken) -> str:
        if token.type == IdlTokenType.EOF:
            return "end of file"
        return f"'{token.value}'"

    def _error(self, message: str, token: Optional[IdlToken] = None, hint: Optional[str] = None) -> IdlSyntaxError:
        token = token or self._peek()
        source_line = None
        if 0 < token.line <= len(self._source_lines):
            source_line = self._source_lines[token.line - 1]
        return IdlSyntaxError(message, location=token.location, hint=hint, source_line=source_line)

    # =========================================================================
    # Definitions
    # =========================================================================

    def _parse_definition(self):
        doc = self._take_doc()
        attributes = self._parse_attributes()
        if doc is None:
            doc = self._take_doc()
        token = self._peek()

        if token.type == IdlTokenType.NAMESPACE:
            return self._parse_namespace(attributes, doc)
        if token.type == IdlTokenType.DICTIONARY:
            return self._parse_dictionary(attributes, doc)
        if token.type == IdlTokenType.ENUM:
            return self._parse_enum(attributes, doc)
        if token.type == IdlTokenType.INTERFACE:
            return self._parse_interface(attributes, doc)
        if token.type == IdlTokenType.CALLBACK:
            return self._parse_callback(attributes, doc)
        if token.type == IdlTokenType.TYPEDEF:
            return self._parse_typedef(attributes)

        raise self._error(
            f"expected a definition, found {self._describe(token)}",
            hint="definitions start with namespace, dictionary, enum, interface, callback or typedef",
        )

    def _parse_namespace(self, attributes: AttributeList, doc: Optional[str]) -> NamespaceDecl:
        start = self._advance()
        name = self._expect_name("namespace name")
        self._expect(IdlTokenType.LBRACE, "'{'")
        functions = []
        while not self._check(IdlTokenType.RBRACE, IdlTokenType.EOF):
            functions.append(self._parse_operation())
        self._expect(IdlTokenType.RBRACE, "'}'")
        self._expect(IdlTokenType.SEMICOLON, "';' after namespace")
        return NamespaceDecl(str(name.value), functions, attributes, start.location, doc)

    def _parse_dictionary(self, attributes: AttributeList, doc: Optional[str]) -> DictionaryDecl:
        start = self._advance()
        name = self._expect_name("dictionary name")
        self._expect(IdlTokenType.LBRACE, "'{'")
        fields = []
        while not self._check(IdlTokenType.RBRACE, IdlTokenType.EOF):
            field_doc = self._take_doc()
            field_attrs = self._parse_attributes()
            field_type = self._parse_type()
            field_name = self._expect_name("field name")
            default = None
            if self._match(IdlTokenType.EQUALS):
                default = self._parse_literal()
            self._expect(IdlTokenType.SEMICOLON, "';' after field")
            fields.append(
                FieldDecl(str(field_name.value), field_type, default, field_attrs,
                          field_name.location, field_doc)
            )
        self._expect(IdlTokenType.RBRACE, "'}'")
        self._expect(IdlTokenType.SEMICOLON, "';' after dictionary")
        return DictionaryDecl(str(name.value), fields, attributes, start.location, doc)

    def _parse_enum(self, attributes: AttributeList, doc: Optional[str]) -> EnumDecl:
        start = self._advance()
        name = self._expect_name("enum name")
        self._expect(IdlTokenType.LBRACE, "'{'")
        variants = []
        while not self._check(IdlTokenType.RBRACE, IdlTokenType.EOF):
            variant = self._expect(IdlTokenType.STRING, "quoted variant name")
            variants.append((str(variant.value), variant.location))
            if not self._match(IdlTokenType.COMMA):
                break
        self._expect(IdlTokenType.RBRACE, "'}'")
        self._expect(IdlTokenType.SEMICOLON, "';' after enum")
        if not variants:
            raise self._error(f"enum '{name.value}' has no variants", name)
        return EnumDecl(str(name.value), variants, attributes, start.location, doc)

    def _parse_interface(self, attributes: AttributeList, doc: Optional[str]) -> InterfaceDecl:
        start = self._advance()
        name = self._expect_name("interface name")
        self._expect(IdlTokenType.LBRACE, "'{'")
        constructors = []
        operations = []
        while not self._check(IdlTokenType.RBRACE, IdlTokenType.EOF):
            member_doc = self._take_doc()
            member_attrs = self._parse_attributes()
            if self._check(IdlTokenType.CONSTRUCTOR):
                ctor = self._advance()
                params = self._parse_params()
                self._expect(IdlTokenType.SEMICOLON, "';' after constructor")
                constructors.append(ConstructorDecl(params, member_attrs, ctor.location, member_doc))
            else:
                operations.append(self._parse_operation(member_attrs, member_doc))
        self._expect(IdlTokenType.RBRACE, "'}'")
        self._expect(IdlTokenType.SEMICOLON, "';' after interface")
        return InterfaceDecl(str(name.value), constructors, operations, attributes, start.location, doc)

    def _parse_callback(self, attributes: AttributeList, doc: Optional[str]) -> CallbackDecl:
        start = self._advance()
        self._expect(IdlTokenType.INTERFACE, "'interface' after 'callback'")
        name = self._expect_name("callback interface name")
        self._expect(IdlTokenType.LBRACE, "'{'")
        operations = []
        while not self._check(IdlTokenType.RBRACE, IdlTokenType.EOF):
            operations.append(self._parse_operation())
        self._expect(IdlTokenType.RBRACE, "'}'")
        self._expect(IdlTokenType.SEMICOLON, "';' after callback interface")
        return CallbackDecl(str(name.value), operations, attributes, start.location, doc)

    def _parse_typedef(self, attributes: AttributeList) -> TypedefDecl:
        start = self._advance()
        kind = self._peek()
        if not (kind.is_word and kind.value in TYPEDEF_KINDS):
            raise self._error(
                f"expected typedef kind, found {self._describe(kind)}",
                hint=f"use one of: {', '.join(TYPEDEF_KINDS)}",
            )
        self._advance()
        name = self._expect_name("typedef name")
        self._expect(IdlTokenType.SEMICOLON, "';' after typedef")
        return TypedefDecl(str(name.value), str(kind.value), attributes, start.location)

    # =========================================================================
    # Members
    # =========================================================================

    def _parse_operation(
        self,
        attributes: Optional[AttributeList] = None,
        doc: Optional[str] = None,
    ) -> OperationDecl:
        """Parse ``[attrs] return_type name(params);`` or ``Name(params);`` for variants."""
        if attributes is None:
            doc = self._take_doc()
            attributes = self._parse_attributes()

        start = self._peek()
        return_type = None
        if self._match(IdlTokenType.VOID):
            pass
        elif start.is_word and self._peek(1).type == IdlTokenType.LPAREN:
            # Variant form: no return type
            pass
        else:
            return_type = self._parse_type()

        name = self._expect_name("operation name")
        params = self._parse_params()
        self._expect(IdlTokenType.SEMICOLON, f"';' after '{name.value}(...)'")
        return OperationDecl(
            str(name.value), return_type, params, attributes, name.location, doc,
            returns_void=start.type == IdlTokenType.VOID,
        )

    def _parse_params(self) -> list[ParamDecl]:
        self._expect(IdlTokenType.LPAREN, "'('")
        params = []
        if not self._check(IdlTokenType.RPAREN):
            while True:
                attrs = self._parse_attributes()
                param_type = self._parse_type()
                name = self._expect_name("parameter name")
                default = None
                if self._match(IdlTokenType.EQUALS):
                    default = self._parse_literal()
                params.append(ParamDecl(str(name.value), param_type, default, attrs, name.location))
                if not self._match(IdlTokenType.COMMA):
                    break
        self._expect(IdlTokenType.RPAREN, "')'")
        return params

    # =========================================================================
    # Attributes, Types and Literals
    # =========================================================================

    def _parse_attributes(self) -> AttributeList:
        attributes = AttributeList()
        if not self._match(IdlTokenType.LBRACKET):
            return attributes
        while True:
            name = self._expect_name("attribute name")
            value = None
            if self._match(IdlTokenType.EQUALS):
                token = self._peek()
                if token.type == IdlTokenType.STRING or token.is_word:
                    value = str(self._advance().value)
                else:
                    raise self._error(f"expected attribute value, found {self._describe(token)}")
            attributes.entries.append(Attribute(str(name.value), value, name.location))
            if not self._match(IdlTokenType.COMMA):
                break
        self._expect(IdlTokenType.RBRACKET, "']'")
        return attributes

    def _parse_type(self) -> TypeExpr:
        token = self._peek()
        if self._match(IdlTokenType.SEQUENCE):
            self._expect(IdlTokenType.LT, "'<' after 'sequence'")
            inner = self._parse_type()
            self._expect(IdlTokenType.GT, "'>'")
            expr = TypeExpr(token.location, sequence_of=inner)
        elif self._match(IdlTokenType.RECORD):
            self._expect(IdlTokenType.LT, "'<' after 'record'")
            key = self._parse_type()
            self._expect(IdlTokenType.COMMA, "',' between key and value types")
            value = self._parse_type()
            self._expect(IdlTokenType.GT, "'>'")
            expr = TypeExpr(token.location, map_of=(key, value))
        elif token.type == IdlTokenType.IDENTIFIER:
            self._advance()
            expr = TypeExpr(token.location, name=str(token.value))
        else:
            raise self._error(f"expected a type, found {self._describe(token)}")

        if self._match(IdlTokenType.QUESTION):
            expr.optional = True
        return expr

    def _parse_literal(self) -> LiteralExpr:
        token = self._advance()
        loc = token.location
        if token.type == IdlTokenType.INTEGER:
            return LiteralExpr("integer", token.value, loc)
        if token.type == IdlTokenType.FLOAT:
            return LiteralExpr("float", token.value, loc)
        if token.type == IdlTokenType.STRING:
            return LiteralExpr("string", token.value, loc)
        if token.type == IdlTokenType.TRUE:
            return LiteralExpr("boolean", True, loc)
        if token.type == IdlTokenType.FALSE:
            return LiteralExpr("boolean", False, loc)
        if token.type == IdlTokenType.NULL:
            return LiteralExpr("null", None, loc)
        if token.type == IdlTokenType.LBRACKET:
            self._expect(IdlTokenType.RBRACKET, "']' (only empty sequence defaults are supported)")
            return LiteralExpr("empty_sequence", None, loc)
        if token.type == IdlTokenType.LBRACE:
            self._expect(IdlTokenType.RBRACE, "'}' (only empty map defaults are supported)")
            return LiteralExpr("empty_map", None, loc)
        if token.type == IdlTokenType.IDENTIFIER:
            return LiteralExpr("identifier", token.value, loc)
        raise self._error(f"expected a default value, found {self._describe(token)}", token)


def parse_idl(source: str, filename: str = "<input>") -> IdlFile:
    """Tokenize and parse interface-definition text."""
    lexer = IdlLexer(source, filename)
    tokens = list(lexer.tokenize())
    return IdlParser(tokens, source, filename).parse()
