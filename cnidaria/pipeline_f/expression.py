"""Sandboxed noise-expression compiler.

User-authored noise functions arrive as text such as
``"sqrt(x * x + y * y) + sin(atan2(y, x) * 2.0) * 3.0"``. They are never
handed to ``eval``: the source goes through

    1. a character whitelist (digits, operators, the variable names and the
       letters of the fixed function vocabulary),
    2. a case-insensitive banned-substring scan,
    3. a tokenizer and recursive-descent parser producing an immutable AST.

The AST is then compiled twice on demand:

    - a scalar closure tree (``CompiledExpression.__call__``) for the CPU
      reference path, and
    - a tensor closure tree (``CompiledExpression.lower_to_torch()``) for the
      GPU coordinate kernel.

Both follow IEEE semantics internally (domain errors yield NaN/Inf instead of
raising) and coerce a non-finite final result to 0.0, so CPU and GPU agree on
degenerate inputs.

Grammar (lowest to highest precedence)::

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/' | '%') unary)*
    unary   := ('-' | '+') unary | power
    power   := primary ('**' unary)?
    primary := NUMBER | CONSTANT | VARIABLE | NAME '(' expr (',' expr)* ')' | '(' expr ')'

``%`` is a truncated remainder (sign of the dividend). ``round`` rounds half
up. ``min``/``max`` take two or more arguments.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import torch

from cnidaria.errors import InvalidExpression
from cnidaria.utils.compute import nonfinite_to_zero
from cnidaria.utils.hashing import sha256_string

logger = logging.getLogger(__name__)

MAX_SOURCE_LENGTH = 1024
MAX_NESTING_DEPTH = 64

BANNED_SUBSTRINGS = (
    "import", "require", "global", "window", "document", "function",
    "eval", "exec", "lambda", "class", "def", "return", "while",
    "this", "constructor", "prototype", "__", "=>",
)

_OPERATOR_CHARS = set("+-*/%(),. \t")

_TOKEN_RE = re.compile(
    r"(?P<ws>[ \t]+)"
    r"|(?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<name>[A-Za-z][A-Za-z0-9]*)"
    r"|(?P<op>\*\*|[+\-*/%(),])"
)

_VARIABLE_RE = re.compile(r"^[a-z][a-z0-9]*$")


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Number, Variable, UnaryOp, BinaryOp, Call]


# ---------------------------------------------------------------------------
# Scalar semantics (IEEE results, never raise)
# ---------------------------------------------------------------------------

def _s_div(a: float, b: float) -> float:
    if b == 0.0:
        if a == 0.0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _s_mod(a: float, b: float) -> float:
    if b == 0.0 or math.isinf(a) or math.isnan(a) or math.isnan(b):
        return math.nan
    return math.fmod(a, b)


def _s_pow(a: float, b: float) -> float:
    try:
        return math.pow(a, b)
    except OverflowError:
        if a < 0 and float(b).is_integer() and int(b) % 2 == 1:
            return -math.inf
        return math.inf
    except ValueError:
        if a == 0.0 and b < 0:
            return math.inf
        return math.nan


def _s_guard(fn: Callable[[float], float], overflow: float = math.inf) -> Callable[[float], float]:
    def wrapped(a: float) -> float:
        try:
            return fn(a)
        except OverflowError:
            return overflow
        except ValueError:
            return math.nan
    return wrapped


def _s_log(a: float) -> float:
    if a == 0.0:
        return -math.inf
    if a < 0 or math.isnan(a):
        return math.nan
    return math.log(a)


def _s_sqrt(a: float) -> float:
    if math.isnan(a) or a < 0:
        return math.nan
    return math.sqrt(a)


def _s_integral(fn: Callable[[float], int]) -> Callable[[float], float]:
    def wrapped(a: float) -> float:
        if not math.isfinite(a):
            return a
        return float(fn(a))
    return wrapped


def _s_round(a: float) -> float:
    if not math.isfinite(a):
        return a
    return float(math.floor(a + 0.5))


def _s_sign(a: float) -> float:
    if math.isnan(a) or a == 0.0:
        return a
    return 1.0 if a > 0 else -1.0


def _s_min(*args: float) -> float:
    if any(math.isnan(a) for a in args):
        return math.nan
    return min(args)


def _s_max(*args: float) -> float:
    if any(math.isnan(a) for a in args):
        return math.nan
    return max(args)


# ---------------------------------------------------------------------------
# Tensor semantics
# ---------------------------------------------------------------------------

def _t_round(a: torch.Tensor) -> torch.Tensor:
    return torch.floor(a + 0.5)


def _t_sign(a: torch.Tensor) -> torch.Tensor:
    return torch.where(torch.isnan(a), a, torch.sign(a))


def _t_reduce(fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor]):
    def reduced(*args: torch.Tensor) -> torch.Tensor:
        out = args[0]
        for a in args[1:]:
            out = fn(out, a)
        return out
    return reduced


@dataclass(frozen=True)
class _FunctionSpec:
    min_args: int
    max_args: Optional[int]
    scalar: Callable[..., float]
    tensor: Callable[..., torch.Tensor]


FUNCTIONS: Dict[str, _FunctionSpec] = {
    "sqrt": _FunctionSpec(1, 1, _s_sqrt, torch.sqrt),
    "sin": _FunctionSpec(1, 1, _s_guard(math.sin, math.nan), torch.sin),
    "cos": _FunctionSpec(1, 1, _s_guard(math.cos, math.nan), torch.cos),
    "tan": _FunctionSpec(1, 1, _s_guard(math.tan, math.nan), torch.tan),
    "asin": _FunctionSpec(1, 1, _s_guard(math.asin), torch.asin),
    "acos": _FunctionSpec(1, 1, _s_guard(math.acos), torch.acos),
    "atan": _FunctionSpec(1, 1, math.atan, torch.atan),
    "atan2": _FunctionSpec(2, 2, math.atan2, torch.atan2),
    "pow": _FunctionSpec(2, 2, _s_pow, torch.pow),
    "abs": _FunctionSpec(1, 1, abs, torch.abs),
    "min": _FunctionSpec(2, None, _s_min, _t_reduce(torch.minimum)),
    "max": _FunctionSpec(2, None, _s_max, _t_reduce(torch.maximum)),
    "log": _FunctionSpec(1, 1, _s_log, torch.log),
    "exp": _FunctionSpec(1, 1, _s_guard(math.exp), torch.exp),
    "floor": _FunctionSpec(1, 1, _s_integral(math.floor), torch.floor),
    "ceil": _FunctionSpec(1, 1, _s_integral(math.ceil), torch.ceil),
    "round": _FunctionSpec(1, 1, _s_round, _t_round),
    "sign": _FunctionSpec(1, 1, _s_sign, _t_sign),
}

CONSTANTS: Dict[str, float] = {"PI": math.pi, "E": math.e}

_SCALAR_BINARY: Dict[str, Callable[[float, float], float]] = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": _s_div,
    "%": _s_mod,
    "**": _s_pow,
}

_TENSOR_BINARY: Dict[str, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = {
    "+": torch.add,
    "-": torch.sub,
    "*": torch.mul,
    "/": torch.div,
    "%": torch.fmod,
    "**": torch.pow,
}


# ---------------------------------------------------------------------------
# Validation and parsing
# ---------------------------------------------------------------------------

def _allowed_letters(variables: Sequence[str]) -> set:
    words = list(FUNCTIONS) + list(CONSTANTS) + list(variables)
    letters = set()
    for word in words:
        letters.update(word.lower())
        letters.update(word.upper())
    return letters


def _screen_source(source: str, variables: Sequence[str]) -> str:
    """Whitelist and banned-token checks; returns the stripped source."""
    if not isinstance(source, str):
        raise InvalidExpression(f"Expression must be a string, got {type(source).__name__}")
    text = source.strip()
    if not text:
        raise InvalidExpression("Expression is empty", source=source)
    if len(text) > MAX_SOURCE_LENGTH:
        raise InvalidExpression(
            f"Expression is {len(text)} characters, limit is {MAX_SOURCE_LENGTH}", source=source
        )

    allowed = _allowed_letters(variables) | _OPERATOR_CHARS
    for pos, ch in enumerate(text):
        if not (ch.isdigit() and ch.isascii()) and ch not in allowed:
            raise InvalidExpression(
                f"Disallowed character {ch!r} at position {pos}", source=source, position=pos
            )

    lowered = text.lower()
    for banned in BANNED_SUBSTRINGS:
        if banned in lowered:
            raise InvalidExpression(f"Expression contains banned token '{banned}'", source=source)
    return text


def _tokenize(text: str) -> List[Tuple[str, str, int]]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise InvalidExpression(
                f"Unexpected character {text[pos]!r} at position {pos}", source=text, position=pos
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group(), pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str, variables: Sequence[str]):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.depth = 0
        self.variables = set(variables)

    def _peek(self) -> Optional[Tuple[str, str, int]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _error(self, message: str, token: Optional[Tuple[str, str, int]] = None) -> InvalidExpression:
        position = token[2] if token else len(self.text)
        return InvalidExpression(f"{message} at position {position}", source=self.text, position=position)

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == op:
            self.pos += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            tok = self._peek()
            found = repr(tok[1]) if tok else "end of input"
            raise self._error(f"Expected '{op}', found {found}", tok)

    def parse(self) -> Node:
        if not self.tokens:
            raise InvalidExpression("Expression is empty", source=self.text)
        node = self._expression()
        tok = self._peek()
        if tok is not None:
            raise self._error(f"Unexpected token {tok[1]!r}", tok)
        return node

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise self._error("Expression nested too deeply", self._peek())

    def _expression(self) -> Node:
        self._enter()
        try:
            node = self._term()
            while True:
                if self._accept("+"):
                    node = BinaryOp("+", node, self._term())
                elif self._accept("-"):
                    node = BinaryOp("-", node, self._term())
                else:
                    return node
        finally:
            self.depth -= 1

    def _term(self) -> Node:
        node = self._unary()
        while True:
            for op in ("*", "/", "%"):
                if self._accept(op):
                    node = BinaryOp(op, node, self._unary())
                    break
            else:
                return node

    def _unary(self) -> Node:
        # Each prefix sign counts as one nesting level
        for sign in ("-", "+"):
            if self._accept(sign):
                self._enter()
                try:
                    operand = self._unary()
                finally:
                    self.depth -= 1
                return UnaryOp("-", operand) if sign == "-" else operand
        return self._power()

    def _power(self) -> Node:
        base = self._primary()
        if self._accept("**"):
            self._enter()
            try:
                return BinaryOp("**", base, self._unary())
            finally:
                self.depth -= 1
        return base

    def _primary(self) -> Node:
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression")
        kind, text, _ = tok

        if kind == "number":
            self.pos += 1
            return Number(float(text))

        if kind == "name":
            self.pos += 1
            if text in self.variables:
                return Variable(text)
            if text.upper() in CONSTANTS:
                return Number(CONSTANTS[text.upper()])
            if text in FUNCTIONS:
                return self._call(text, tok)
            raise self._error(f"Unknown identifier '{text}'", tok)

        if self._accept("("):
            node = self._expression()
            self._expect(")")
            return node

        raise self._error(f"Unexpected token {text!r}", tok)

    def _call(self, name: str, name_tok: Tuple[str, str, int]) -> Node:
        sig = FUNCTIONS[name]
        self._expect("(")
        args = []
        if not self._accept(")"):
            args.append(self._expression())
            while self._accept(","):
                args.append(self._expression())
            self._expect(")")

        if len(args) < sig.min_args or (sig.max_args is not None and len(args) > sig.max_args):
            if sig.max_args == sig.min_args:
                expected = str(sig.min_args)
            else:
                expected = f"at least {sig.min_args}"
            raise self._error(f"{name}() takes {expected} argument(s), got {len(args)}", name_tok)
        return Call(name, tuple(args))


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def _fold_constants(node: Node) -> Node:
    """Evaluate subtrees without variables once, at compile time."""
    if isinstance(node, UnaryOp):
        operand = _fold_constants(node.operand)
        if isinstance(operand, Number):
            return Number(-operand.value)
        return UnaryOp(node.op, operand)
    if isinstance(node, BinaryOp):
        left, right = _fold_constants(node.left), _fold_constants(node.right)
        if isinstance(left, Number) and isinstance(right, Number):
            return Number(_SCALAR_BINARY[node.op](left.value, right.value))
        return BinaryOp(node.op, left, right)
    if isinstance(node, Call):
        args = tuple(_fold_constants(a) for a in node.args)
        if all(isinstance(a, Number) for a in args):
            return Number(FUNCTIONS[node.name].scalar(*(a.value for a in args)))
        return Call(node.name, args)
    return node


def _build_scalar(node: Node, slots: Dict[str, int]) -> Callable[[Sequence[float]], float]:
    if isinstance(node, Number):
        value = node.value
        return lambda env: value
    if isinstance(node, Variable):
        slot = slots[node.name]
        return lambda env: env[slot]
    if isinstance(node, UnaryOp):
        operand = _build_scalar(node.operand, slots)
        return lambda env: -operand(env)
    if isinstance(node, BinaryOp):
        left, right = _build_scalar(node.left, slots), _build_scalar(node.right, slots)
        op = _SCALAR_BINARY[node.op]
        return lambda env: op(left(env), right(env))

    fn = FUNCTIONS[node.name].scalar
    args = [_build_scalar(a, slots) for a in node.args]
    if len(args) == 1:
        (a0,) = args
        return lambda env: fn(a0(env))
    if len(args) == 2:
        a0, a1 = args
        return lambda env: fn(a0(env), a1(env))
    return lambda env: fn(*(a(env) for a in args))


def _build_tensor(node: Node, slots: Dict[str, int]) -> Callable[[Sequence[torch.Tensor]], torch.Tensor]:
    if isinstance(node, Number):
        value = node.value
        return lambda env: torch.full_like(env[0], value)
    if isinstance(node, Variable):
        slot = slots[node.name]
        return lambda env: env[slot]
    if isinstance(node, UnaryOp):
        operand = _build_tensor(node.operand, slots)
        return lambda env: torch.neg(operand(env))
    if isinstance(node, BinaryOp):
        left, right = _build_tensor(node.left, slots), _build_tensor(node.right, slots)
        op = _TENSOR_BINARY[node.op]
        return lambda env: op(left(env), right(env))

    fn = FUNCTIONS[node.name].tensor
    args = [_build_tensor(a, slots) for a in node.args]
    return lambda env: fn(*(a(env) for a in args))


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "(0 / 0)"
    if math.isinf(value):
        return "(1 / 0)" if value > 0 else "(-1 / 0)"
    text = repr(value)
    return f"({text})" if value < 0 else text


def node_to_source(node: Node) -> str:
    """Canonical, fully parenthesized source text for an AST."""
    if isinstance(node, Number):
        return _format_number(node.value)
    if isinstance(node, Variable):
        return node.name
    if isinstance(node, UnaryOp):
        return f"(-{node_to_source(node.operand)})"
    if isinstance(node, BinaryOp):
        return f"({node_to_source(node.left)} {node.op} {node_to_source(node.right)})"
    return f"{node.name}({', '.join(node_to_source(a) for a in node.args)})"


class CompiledExpression:
    """A validated, parsed noise expression.

    Calling the object evaluates it on floats; ``lower_to_torch()`` gives the
    equivalent function over tensors. Both return 0.0 where the raw result
    is NaN or infinite. ``evaluate_raw()`` and
    ``lower_to_torch(coerce_nonfinite=False)`` keep the raw result so the
    coordinate pipeline can flag degenerate samples.

    Examples
    --------
    >>> fn = compile_expression("sqrt(x * x + y * y)")
    >>> fn(3.0, 4.0)
    5.0
    >>> fn.to_source()
    'sqrt(((x * x) + (y * y)))'
    """

    def __init__(self, source: str, ast: Node, variables: Tuple[str, ...]):
        self.source = source
        self.ast = ast
        self.variables = variables
        slots = {name: i for i, name in enumerate(variables)}
        self._scalar = _build_scalar(ast, slots)
        self._tensor_fns: Dict[bool, Callable[..., torch.Tensor]] = {}
        self._slots = slots
        self._canonical = node_to_source(ast)

    def evaluate_raw(self, *args: float) -> float:
        """Evaluate without coercing non-finite results."""
        if len(args) != len(self.variables):
            raise TypeError(f"Expected {len(self.variables)} arguments ({', '.join(self.variables)}), got {len(args)}")
        return self._scalar(args)

    def __call__(self, *args: float) -> float:
        value = self.evaluate_raw(*args)
        return value if math.isfinite(value) else 0.0

    def lower_to_torch(self, coerce_nonfinite: bool = True) -> Callable[..., torch.Tensor]:
        """Tensor function with the same semantics as ``__call__``.

        Arguments must be broadcast-compatible floating tensors on one device.
        With ``coerce_nonfinite=False`` NaN and Inf pass through, matching
        ``evaluate_raw``.
        """
        fn = self._tensor_fns.get(coerce_nonfinite)
        if fn is None:
            build = _build_tensor(self.ast, self._slots)
            arity = len(self.variables)

            def evaluate(*tensors: torch.Tensor) -> torch.Tensor:
                if len(tensors) != arity:
                    raise TypeError(f"Expected {arity} tensors, got {len(tensors)}")
                env = torch.broadcast_tensors(*tensors)
                out = build(env)
                return nonfinite_to_zero(out) if coerce_nonfinite else out

            fn = self._tensor_fns[coerce_nonfinite] = evaluate
        return fn

    def to_source(self) -> str:
        return self._canonical

    @property
    def cache_key(self) -> str:
        """Stable key for compiled-kernel caches (hash of the canonical source)."""
        return sha256_string(f"{','.join(self.variables)}|{self._canonical}")

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


def parse_expression(source: str, variables: Sequence[str] = ("x", "y")) -> Node:
    """Validate and parse ``source`` into an AST (no constant folding).

    Raises
    ------
    InvalidExpression
        On any whitelist, banned-token, syntax, identifier or arity failure
    """
    variables = tuple(variables)
    for name in variables:
        if not _VARIABLE_RE.match(name) or name in FUNCTIONS or name.upper() in CONSTANTS:
            raise ValueError(f"Invalid variable name '{name}'")
    text = _screen_source(source, variables)
    return _Parser(text, variables).parse()


def compile_expression(source: str, variables: Sequence[str] = ("x", "y")) -> CompiledExpression:
    """Compile a noise expression into a pure, total function.

    Parameters
    ----------
    source : str
        Expression text over ``variables``
    variables : sequence of str
        Bound variable names, in call order. Default ("x", "y")

    Returns
    -------
    CompiledExpression

    Raises
    ------
    InvalidExpression
        Before any evaluation, if the source is rejected
    """
    variables = tuple(variables)
    ast = _fold_constants(parse_expression(source, variables))
    compiled = CompiledExpression(source, ast, variables)
    logger.debug("Compiled expression %r -> %s", source, compiled.to_source())
    return compiled


def validate_expression(source: str, variables: Sequence[str] = ("x", "y")) -> Tuple[bool, Optional[str]]:
    """Check an expression without raising; returns (ok, error message)."""
    try:
        parse_expression(source, variables)
    except InvalidExpression as e:
        return False, str(e)
    return True, None


# ---------------------------------------------------------------------------
# Built-in noise library
# ---------------------------------------------------------------------------

DEFAULT_NOISE_EXPRESSIONS: Dict[str, str] = {
    "radial": "sqrt(x * x + y * y)",
    "cartesian-x": "abs(x)",
    "cartesian-y": "abs(y)",
    "dna": "sqrt(x * x + y * y) + sin(atan2(y, x) * 2.0) * 3.0 + cos(atan2(y, x) * 2.0) * 2.0",
    "lightning": "sqrt(x * x + y * y) * (1.0 + sin(x * 0.1) * sin(y * 0.1) * 0.5)",
    "spiral": "sqrt(x * x + y * y) + atan2(y, x) * 10.0",
}


def get_default_noise_expression(name: Optional[str]) -> str:
    """Expression text for a built-in noise name; unknown or None gives radial."""
    if name is None:
        return DEFAULT_NOISE_EXPRESSIONS["radial"]
    return DEFAULT_NOISE_EXPRESSIONS.get(name, DEFAULT_NOISE_EXPRESSIONS["radial"])


def resolve_noise_expression(text_or_name: Optional[str]) -> str:
    """Accept either a built-in noise name or literal expression text."""
    if text_or_name is None or text_or_name in DEFAULT_NOISE_EXPRESSIONS:
        return get_default_noise_expression(text_or_name)
    return text_or_name
