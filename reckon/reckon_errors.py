from typing import Any, Dict, List, Optional


class CalcError(Exception):
    """Base for every error the calculator reports to the user.

    `loc` is the location dict produced by the transformer
    ({'line', 'col', 'tag', 'text', ...}); the evaluator fills it in
    at the statement boundary when the raising code had no node handy.
    """
    kind = "Error"
    exit_code = 1

    def __init__(self, message: str = "", loc: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc
        # Names of the calculator functions the error passed through, innermost first.
        self.frames: List[str] = []

    def __str__(self):
        return self.message


class CalcExprError(CalcError):
    kind = "ExpressionError"
    exit_code = 3


class CalcSyntaxError(CalcError):
    kind = "SyntaxError"
    exit_code = 2


class ConversionError(CalcExprError):
    kind = "ConversionError"
    exit_code = 4


class CalcArithmeticError(CalcExprError):
    kind = "ArithmeticError"
    exit_code = 5


class NullValueError(CalcExprError):
    kind = "NullValueError"
    exit_code = 6


class UnknownOperatorError(CalcExprError):
    kind = "UnknownOperatorError"
    exit_code = 7


class UndefinedNameError(CalcExprError):
    kind = "UndefinedNameError"
    exit_code = 8


class CalcAssertionError(CalcExprError):
    kind = "AssertionError"
    exit_code = 9


class VersionMismatchError(CalcError):
    kind = "VersionMismatchError"
    exit_code = 10


class CalcIOError(CalcError):
    kind = "IOError"
    exit_code = 11


class InternalError(CalcError):
    # A leave/next that escaped every enclosing construct.
    kind = "InternalError"
    exit_code = 99
