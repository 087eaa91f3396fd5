"""
The lark front end: grammar loading, the newline post-lexer and
conversion of lark's parse errors into CalcSyntaxError.
"""
import logging
from typing import Iterator, List, Optional

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken
from lark.lark import PostLex

from reckon.reckon_errors import CalcSyntaxError

logger = logging.getLogger("reckon.parser")
logger.addHandler(logging.NullHandler())

# Tokens after which a line break ends the statement.
STATEMENT_ENDERS = frozenset({
    'ID', 'MATCHES', 'INT', 'DECIMAL', 'HEX', 'BIN', 'OCT', 'IMAG', 'UNIT_INT',
    'STRING', 'ISTRING', 'RPAR', 'RSQB', 'RBRACE', 'BANG', 'INC', 'DEC',
    'NEXT', 'LEAVE', 'ARGREF', 'ARGS', 'ARGCOUNT', 'FORMAT', 'DIRECTIVE',
})

# A pending line break is discarded when one of these follows it.
CONTINUATIONS = frozenset({'RBRACE', 'ELSE', 'COMMA', 'RPAR', 'RSQB'})

# `leave NAME <token>` where <token> can only start an expression: NAME is a label.
LABEL_VALUE_STARTERS = frozenset({
    'ID', 'MATCHES', 'INT', 'DECIMAL', 'HEX', 'BIN', 'OCT', 'IMAG', 'UNIT_INT',
    'STRING', 'ISTRING', 'ARGREF', 'ARGS', 'ARGCOUNT', 'TILDE',
    'SUMOF', 'PRODUCTOF', 'ARRAYOF', 'LENGTHOF',
})

_OPENERS = {'LPAR': 'RPAR', 'LSQB': 'RSQB', 'LBRACE': 'RBRACE'}


class ReckonPostLex(PostLex):
    """Turns raw `_NL` tokens into statement separators.

    Inside parentheses and brackets line breaks are insignificant. At the
    top level and inside braces a line break separates statements only
    when the line ends in something that can finish a statement.
    """
    always_accept = ('_NL',)

    def process(self, stream: Iterator[Token]) -> Iterator[Token]:
        brackets: List[str] = []
        previous: Optional[Token] = None
        pending: Optional[Token] = None

        for tok in self._label_colons(stream):
            if tok.type == '_NL':
                if brackets and brackets[-1] != 'LBRACE':
                    continue
                if previous is None or previous.type not in STATEMENT_ENDERS:
                    continue
                if pending is None:
                    pending = tok
                continue

            if pending is not None:
                if tok.type not in CONTINUATIONS:
                    yield pending
                pending = None

            if tok.type in _OPENERS:
                brackets.append(tok.type)
            elif tok.type in ('RPAR', 'RSQB', 'RBRACE') and brackets:
                brackets.pop()

            previous = tok
            yield tok

    def _label_colons(self, stream: Iterator[Token]) -> Iterator[Token]:
        """Rewrite `leave outer 42` as `leave outer: 42`."""
        after_leave = False
        held: Optional[Token] = None
        for tok in stream:
            if held is not None:
                yield held
                if tok.type in LABEL_VALUE_STARTERS:
                    yield Token.new_borrow_pos('COLON', ':', held)
                held = None
            elif after_leave and tok.type == 'ID':
                after_leave = False
                held = tok
                continue
            after_leave = tok.type == 'LEAVE'
            yield tok
        if held is not None:
            yield held


class ReckonParser:
    """Parses source text into a lark tree; the grammar is built once."""

    _lark: Optional[Lark] = None

    def __init__(self):
        if ReckonParser._lark is None:
            ReckonParser._lark = Lark.open(
                "reckon_grammar.lark",
                rel_to=__file__,
                start="program",
                parser="lalr",
                lexer="basic",
                propagate_positions=True,
                maybe_placeholders=False,
                postlex=ReckonPostLex(),
            )
            logger.debug("Built LALR parser from reckon_grammar.lark")
        self.lark = ReckonParser._lark

    def parse(self, source: str) -> Tree:
        try:
            return self.lark.parse(source)
        except UnexpectedInput as e:
            raise self._syntax_error(e, source) from None

    def _syntax_error(self, e: UnexpectedInput, source: str) -> CalcSyntaxError:
        line = getattr(e, 'line', None)
        col = getattr(e, 'column', None)
        text = None
        match e:
            case UnexpectedToken(token=tok) if tok.type == '$END':
                msg = "Unexpected end of input"
            case UnexpectedToken(token=tok):
                text = str(tok)
                if tok.type == '_NL':
                    msg = "Unexpected end of line"
                else:
                    msg = f"Unexpected '{tok}'"
                expected = sorted(t for t in e.expected if not t.startswith('_'))
                if expected and len(expected) <= 8:
                    msg += f", expected one of: {', '.join(expected)}"
            case UnexpectedCharacters():
                text = source[e.pos_in_stream] if 0 <= e.pos_in_stream < len(source) else None
                msg = f"Unexpected character {text!r}"
            case UnexpectedEOF():
                msg = "Unexpected end of input"
            case _:
                msg = str(e)
        if line is None or line < 1:
            lines = source.splitlines() or [""]
            line, col = len(lines), len(lines[-1]) + 1
        loc = {'line': line, 'col': col, 'tag': 'syntax', 'text': text}
        return CalcSyntaxError(msg, loc)
