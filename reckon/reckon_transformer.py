"""
Transforms the lark parse tree into the evaluator's Node tree.
"""
import re
from decimal import Decimal
from typing import Any, List, Optional

from lark import Token, Tree

from reckon.reckon_datatypes import FunctionParameter, Node
from reckon.reckon_errors import CalcSyntaxError
from reckon.reckon_numeric import ComplexNumber

_SIMPLE_ESCAPES = {
    'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f', '0': '\0',
    '\\': '\\', '"': '"', "'": "'",
}

_UNIT_RE = re.compile(r'^(\d+)([KMGTPE])(i?)B$')


def unescape(body: str, keep_dollar: bool = False) -> str:
    """Resolve backslash escapes in a string literal body.

    With `keep_dollar`, `\\$` is left in place for the interpolator.
    """
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != '\\' or i + 1 >= len(body):
            out.append(ch)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt == '$' and keep_dollar:
            out.append('\\$')
            i += 2
        elif nxt in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[nxt])
            i += 2
        elif nxt == 'u' and re.match(r'[0-9a-fA-F]{4}', body[i + 2:i + 6]):
            out.append(chr(int(body[i + 2:i + 6], 16)))
            i += 6
        else:
            out.append(nxt)
            i += 2
    return ''.join(out)


def _tokens(children: List[Any]) -> List[Token]:
    return [c for c in children if isinstance(c, Token)]


def _trees(children: List[Any]) -> List[Tree]:
    return [c for c in children if isinstance(c, Tree)]


class ReckonTransformer:
    """Walks a lark tree and builds Nodes carrying source locations."""

    def __init__(self):
        self.source = ""

    def _loc(self, item, tag: str) -> Optional[dict]:
        if isinstance(item, Token):
            if item.line is None:
                return None
            start, end = item.start_pos, item.end_pos
            line, col = item.line, item.column
        else:
            meta = item.meta
            if getattr(meta, 'empty', True):
                return None
            start, end = meta.start_pos, meta.end_pos
            line, col = meta.line, meta.column
        text = self.source[start:end] if start is not None and end is not None else None
        return {'line': line, 'col': col, 'tag': tag, 'text': text, 'start': start, 'end': end}

    def _attach_loc(self, node: Node, item) -> Node:
        node.loc = self._loc(item, node.kind)
        return node

    def transform(self, tree: Tree, source: str = "") -> Node:
        self.source = source
        return self._transform(tree)

    def _all(self, items) -> List[Node]:
        return [self._transform(t) for t in items]

    def _transform(self, tree: Any) -> Any:
        if tree is None:
            return None
        if isinstance(tree, Token):
            return self._token_atom(tree)

        children = tree.children
        tag = tree.data

        match tag:
            # Structure
            case 'program':
                node = Node('program', self._all(children))
            case 'block' | 'fn_block':
                node = Node('block', self._all(children))

            # Statements
            case 'expr_stmt':
                fmt = [t for t in _tokens(children) if t.type == 'FORMAT']
                node = Node('expr_stmt', [self._transform(children[0])],
                            text=fmt[0][1:] if fmt else None)
            case 'define_stmt':
                node = self._define(tree)
            case 'var_stmt' | 'const_stmt' | 'enum_stmt':
                items = []
                for item in children:
                    name = item.children[0]
                    value = _trees(item.children)
                    items.append(self._attach_loc(
                        Node('binding', self._all(value), text=str(name)), item))
                node = Node(tag[:-5], items)
            case 'loop_stmt':
                node = self._loop(tree)
            case 'while_stmt':
                label = self._label(children)
                cond, body = [c for c in children if not (isinstance(c, Tree) and c.data == 'label')]
                node = Node('while', [self._transform(cond), self._transform(body)], text=label)
            case 'if_stmt':
                node = Node('if', self._all(children))
            case 'case_stmt':
                node = Node('case', [self._transform(children[0])] + self._all(children[1:]))
            case 'case_arm':
                node = Node('case_arm', self._all(children))
            case 'sel_default':
                node = Node('sel_default')
            case 'sel_range':
                node = Node('sel_range', self._all(_trees(children)))
            case 'sel_regex':
                toks = _tokens(children)
                pattern = unescape(toks[1][1:-1])
                flags = str(toks[2]) if len(toks) > 2 else ""
                node = Node('sel_regex', text=pattern, value=flags)
            case 'sel_compare':
                ops = [str(c.children[0]) for c in children if isinstance(c, Tree) and c.data == 'compare_op']
                conn = [str(c.children[0]) for c in children if isinstance(c, Tree) and c.data == 'bool_conn']
                operands = [c for c in children if isinstance(c, Tree) and c.data not in ('compare_op', 'bool_conn')]
                node = Node('sel_compare', self._all(operands), value=(ops, conn[0] if conn else None))
            case 'sel_value':
                node = Node('sel_value', self._all(children))
            case 'leave_stmt':
                label = self._label(children)
                value = [c for c in children if not (isinstance(c, Tree) and c.data == 'label')]
                node = Node('leave', self._all(value), text=label)
            case 'next_stmt':
                node = Node('next')
            case 'timethis_stmt':
                toks = _tokens(children)
                label = unescape(toks[0][1:-1]) if toks else None
                node = Node('timethis', [self._transform(children[-1])], text=label)
            case 'directive':
                name = str(children[0])[1:]
                args = []
                body = None
                for c in children[1:]:
                    if c.data == 'dir_args':
                        args = self._all(c.children)
                    else:
                        body = self._transform(c)
                node = Node('directive', args, text=name, value=body)

            # Loop control
            case 'range_ctl':
                node = Node('range', self._all(_trees(children)))
            case 'list_ctl':
                node = Node('list', self._all(children))
            case 'reduction':
                node = Node('reduction', [self._transform(children[1])], text=str(children[0]).lower())

            # Expressions
            case 'assign':
                target, op, value = children
                node = Node('assign', [self._transform(target), self._transform(value)], text=str(op))
            case 'ternary':
                node = Node('ternary', self._all(children))
            case 'binop':
                left, op, right = children
                node = Node('binop', [self._transform(left), self._transform(right)], text=str(op))
            case 'unary_op':
                op, operand = children
                node = Node('unary', [self._transform(operand)], text=str(op))
            case 'pre_incdec':
                op, operand = children
                node = Node('incdec', [self._transform(operand)], text=str(op), value='pre')
            case 'post_incdec':
                operand, op = children
                node = Node('incdec', [self._transform(operand)], text=str(op), value='post')
            case 'factorial':
                node = Node('factorial', [self._transform(children[0])])
            case 'call':
                args = children[1].children if len(children) > 1 else []
                node = Node('call', [self._transform(children[0])] + self._all(args))
            case 'index':
                node = Node('index', self._all(children))
            case 'slice':
                lo = next((c.children[0] for c in children[1:] if c.data == 'slice_lo'), None)
                hi = next((c.children[0] for c in children[1:] if c.data == 'slice_hi'), None)
                node = Node('slice', [self._transform(children[0]), self._transform(lo), self._transform(hi)])
            case 'member':
                node = Node('member', [self._transform(children[0])], text=str(children[1]))

            # Atoms
            case 'literal':
                node = self._literal(children[0])
            case 'string':
                node = Node('string', text=str(children[0]), value=unescape(children[0][1:-1]))
            case 'istring':
                node = Node('istring', text=str(children[0]), value=unescape(children[0][2:-1], keep_dollar=True))
            case 'name':
                node = Node('name', text=str(children[0]))
            case 'argref':
                node = Node('argref', text=str(children[0]), value=int(children[0][1:]))
            case 'all_args':
                node = Node('all_args', text='$*')
            case 'arg_count':
                node = Node('arg_count', text='$#')
            case 'array':
                node = Node('array', self._all(children))
            case 'object':
                node = Node('object', self._all(children))
            case 'pair':
                key, value = children
                text = unescape(key[1:-1]) if key.type == 'STRING' else str(key)
                node = Node('pair', [self._transform(value)], text=text)
            case _:
                raise CalcSyntaxError(f"Unsupported syntax '{tag}'", self._loc(tree, tag))

        return self._attach_loc(node, tree)

    # --- helpers ---

    def _token_atom(self, tok: Token) -> Node:
        return self._attach_loc(Node('name', text=str(tok)), tok)

    def _label(self, children) -> Optional[str]:
        for c in children:
            if isinstance(c, Tree) and c.data == 'label':
                return str(c.children[0])
        return None

    def _literal(self, tok: Token) -> Node:
        text = str(tok)
        match tok.type:
            case 'INT':
                return Node('literal', text=text, value=int(text))
            case 'DECIMAL':
                return Node('literal', text=text, value=Decimal(text))
            case 'HEX' | 'BIN' | 'OCT':
                return Node('literal', text=text, value=int(text, 0))
            case 'IMAG':
                digits = text[:-1]
                magnitude = Decimal(digits) if '.' in digits else int(digits)
                return Node('literal', text=text, value=ComplexNumber.of(0, magnitude))
            case 'UNIT_INT':
                m = _UNIT_RE.match(text)
                # The multiplier depends on the unit mode in force when evaluated.
                return Node('unit', text=text, value=(int(m.group(1)), m.group(2), bool(m.group(3))))
        raise CalcSyntaxError(f"Unknown literal '{text}'", self._loc(tok, 'literal'))

    def _define(self, tree: Tree) -> Node:
        children = tree.children
        name = str(children[0])
        params: List[FunctionParameter] = []
        params_given = False
        body_tree = children[-1]
        for c in children[1:-1]:
            if isinstance(c, Tree) and c.data == 'params':
                params_given = True
                for p in c.children:
                    pname = str(p.children[0])
                    if p.data == 'rest_param':
                        params.append(FunctionParameter(pname, rest=True))
                    else:
                        default = _trees(p.children)
                        params.append(FunctionParameter(pname, self._transform(default[0]) if default else None))
        seen = set()
        for i, p in enumerate(params):
            if p.name in seen:
                raise CalcSyntaxError(f"Duplicate parameter '{p.name}' in '{name}'", self._loc(tree, 'define'))
            if p.rest and i != len(params) - 1:
                raise CalcSyntaxError(f"Rest parameter '{p.name}' must come last", self._loc(tree, 'define'))
            seen.add(p.name)
        body = self._transform(body_tree)
        body_text = body.source
        return Node('define', [body], text=name, value=(params, params_given, body_text))

    def _loop(self, tree: Tree) -> Node:
        label = self._label(tree.children)
        var = None
        mode = None
        ctl = body = None
        for c in tree.children:
            if not isinstance(c, Tree):
                continue
            match c.data:
                case 'label':
                    pass
                case 'loop_var':
                    for t in c.children:
                        if t.type == 'ID':
                            var = str(t)
                        else:
                            mode = t.type.lower()
                case 'block':
                    body = self._transform(c)
                case _:
                    ctl = self._transform(c)
        return Node('loop', [ctl, body], text=label, value={'var': var, 'mode': mode})
