"""Test the sandboxed noise-expression compiler.

Tests for cnidaria.pipeline_f.expression:
    - Accepted expressions evaluate to the expected floats
    - Rejected expressions raise InvalidExpression before evaluation
    - Non-finite results are coerced to 0.0 (scalar and tensor)
    - Tensor lowering agrees with scalar evaluation
    - Canonical source and cache keys are stable

Run:
    pytest tests/test_expression.py -v
"""

import math

import pytest
import torch

from cnidaria.errors import InvalidExpression
from cnidaria.pipeline_f.expression import (
    DEFAULT_NOISE_EXPRESSIONS,
    MAX_SOURCE_LENGTH,
    compile_expression,
    get_default_noise_expression,
    parse_expression,
    resolve_noise_expression,
    validate_expression,
)


# ============================================================================
# ACCEPTED EXPRESSIONS
# ============================================================================

@pytest.mark.parametrize("source,x,y,expected", [
    ("sqrt(x*x+y*y)", 3.0, 4.0, 5.0),
    ("abs(x) + abs(y)", -2.0, 3.0, 5.0),
    ("x ** 2", 3.0, 0.0, 9.0),
    ("-x ** 2", 3.0, 0.0, -9.0),
    ("2 ** 3 ** 2", 0.0, 0.0, 512.0),
    ("x - y - 1", 10.0, 3.0, 6.0),
    ("x / y * 2", 8.0, 4.0, 4.0),
    ("min(x, y, 1)", 5.0, 2.0, 1.0),
    ("max(x, y)", -1.0, -4.0, -1.0),
    ("pow(x, 0.5)", 16.0, 0.0, 4.0),
    ("atan2(y, x)", 1.0, 1.0, math.pi / 4),
    ("floor(x) + ceil(y)", 1.7, 1.2, 3.0),
    ("round(x)", 2.5, 0.0, 3.0),
    ("round(x)", -2.5, 0.0, -2.0),
    ("sign(x) * sign(y)", -3.0, 2.0, -1.0),
    ("x % 3", 7.0, 0.0, 1.0),
    ("x % 3", -7.0, 0.0, -1.0),
    ("PI * 2", 0.0, 0.0, 2 * math.pi),
    ("e", 0.0, 0.0, math.e),
    ("1e2 + .5", 0.0, 0.0, 100.5),
    ("\tx +\ty ", 1.0, 2.0, 3.0),
])
def test_accepted_expressions(source, x, y, expected):
    """Valid expressions compile and evaluate as ordinary arithmetic."""
    fn = compile_expression(source)
    assert fn(x, y) == pytest.approx(expected, rel=1e-12, abs=1e-12)


def test_default_noise_library_compiles():
    """Every built-in noise compiles and is finite at a sample point."""
    for name, source in DEFAULT_NOISE_EXPRESSIONS.items():
        fn = compile_expression(source)
        assert math.isfinite(fn(12.5, -7.25)), name


def test_radial_default_matches_euclidean():
    fn = compile_expression(get_default_noise_expression("radial"))
    assert fn(6.0, 8.0) == pytest.approx(10.0)


def test_resolve_noise_expression():
    """Built-in names resolve to text; literal text passes through; None → radial."""
    assert resolve_noise_expression("spiral") == DEFAULT_NOISE_EXPRESSIONS["spiral"]
    assert resolve_noise_expression("x + y") == "x + y"
    assert resolve_noise_expression(None) == DEFAULT_NOISE_EXPRESSIONS["radial"]
    assert get_default_noise_expression("no-such-noise") == DEFAULT_NOISE_EXPRESSIONS["radial"]


# ============================================================================
# REJECTED EXPRESSIONS
# ============================================================================

@pytest.mark.parametrize("source", [
    "",
    "   ",
    "import os",
    "__import__('os')",
    "x; y",
    "x = 1",
    "eval(x)",
    "exec(x)",
    "lambda: x",
    "document.cookie",
    "window",
    "x => x",
    "sqrt(z)",
    "foo(x)",
    "sqrt(x",
    "sqrt x",
    "x +",
    "(x + y))",
    "x y",
    "sin()",
    "sin(x, y)",
    "atan2(x)",
    "min(x)",
    "x\ny",
    "x[0]",
    "'x'",
    "x ≥ y",
])
def test_rejected_expressions(source):
    """Disallowed text raises InvalidExpression at compile time."""
    with pytest.raises(InvalidExpression):
        compile_expression(source)


def test_rejects_overlong_source():
    source = "+".join(["x"] * (MAX_SOURCE_LENGTH // 2 + 1))
    assert len(source) > MAX_SOURCE_LENGTH
    with pytest.raises(InvalidExpression, match="limit"):
        compile_expression(source)


def test_rejects_deep_nesting():
    source = "(" * 200 + "x" + ")" * 200
    with pytest.raises(InvalidExpression, match="nested"):
        compile_expression(source)


@pytest.mark.parametrize("source", [
    "+" * 1000 + "x",
    "-" * 1000 + "x",
    "+-" * 500 + "x",
    "**".join(["x"] * 300),
])
def test_rejects_deep_prefix_and_power_chains(source):
    """Long sign runs and power chains fit the length limit but nest too deeply."""
    assert len(source) <= 1024
    with pytest.raises(InvalidExpression, match="nested"):
        compile_expression(source)
    ok, msg = validate_expression(source)
    assert not ok
    assert "nested" in msg


def test_shallow_sign_runs_still_compile():
    assert compile_expression("+-+x")(3.0, 0.0) == -3.0
    assert compile_expression("2 ** 3 ** 2")(0.0, 0.0) == 512.0


def test_rejects_non_string():
    with pytest.raises(InvalidExpression):
        compile_expression(42)


def test_invalid_expression_is_value_error():
    """Callers catching ValueError also see sandbox failures."""
    with pytest.raises(ValueError):
        compile_expression("import")


def test_error_reports_position():
    with pytest.raises(InvalidExpression) as excinfo:
        compile_expression("x + foo")
    assert excinfo.value.position == 4
    assert "foo" in str(excinfo.value)


def test_validate_expression_does_not_raise():
    ok, msg = validate_expression("sqrt(x*x + y*y)")
    assert ok and msg is None

    ok, msg = validate_expression("import os")
    assert not ok
    assert "import" in msg


def test_custom_variables():
    fn = compile_expression("u * 2 + v", variables=("u", "v"))
    assert fn(1.5, 1.0) == pytest.approx(4.0)
    with pytest.raises(InvalidExpression):
        compile_expression("x + y", variables=("u", "v"))


def test_invalid_variable_names():
    with pytest.raises(ValueError):
        parse_expression("sin + 1", variables=("sin",))


# ============================================================================
# IEEE SEMANTICS
# ============================================================================

@pytest.mark.parametrize("source,x,y", [
    ("x / y", 1.0, 0.0),
    ("x / y", 0.0, 0.0),
    ("sqrt(x)", -1.0, 0.0),
    ("log(x)", 0.0, 0.0),
    ("log(x)", -5.0, 0.0),
    ("exp(x)", 1000.0, 0.0),
    ("x % y", 3.0, 0.0),
    ("asin(x)", 2.0, 0.0),
    ("pow(x, y)", 0.0, -1.0),
])
def test_non_finite_results_become_zero(source, x, y):
    """Degenerate arithmetic never raises; the result is 0.0."""
    fn = compile_expression(source)
    assert fn(x, y) == 0.0


def test_evaluate_raw_keeps_non_finite():
    fn = compile_expression("x / y")
    assert math.isinf(fn.evaluate_raw(1.0, 0.0))
    assert math.isnan(fn.evaluate_raw(0.0, 0.0))


def test_wrong_arity_call():
    fn = compile_expression("x + y")
    with pytest.raises(TypeError):
        fn(1.0)


# ============================================================================
# TENSOR LOWERING
# ============================================================================

@pytest.mark.parametrize("source", [
    "sqrt(x*x + y*y)",
    "sin(x * 0.1) * cos(y * 0.2) * 40",
    "x % 7 + abs(y) ** 1.5",
    "min(x, y, 3) + max(x, -y)",
    "round(x / 3) + floor(y / 2) - sign(x - y)",
    "log(x) + sqrt(y)",
    "x / y",
    "4.5",
    DEFAULT_NOISE_EXPRESSIONS["dna"],
])
def test_tensor_lowering_matches_scalar(source):
    """lower_to_torch() matches scalar evaluation elementwise in float64."""
    fn = compile_expression(source)
    tensor_fn = fn.lower_to_torch()

    xs = torch.linspace(-20.0, 20.0, 41, dtype=torch.float64)
    ys = torch.linspace(-13.0, 17.0, 41, dtype=torch.float64)
    out = tensor_fn(xs, ys)

    expected = torch.tensor([fn(float(a), float(b)) for a, b in zip(xs, ys)], dtype=torch.float64)
    assert out.shape == xs.shape
    assert torch.all(torch.isfinite(out))
    assert torch.allclose(out, expected, rtol=1e-12, atol=1e-12)


def test_tensor_lowering_broadcasts():
    tensor_fn = compile_expression("x + y").lower_to_torch()
    out = tensor_fn(torch.zeros(3, 1, dtype=torch.float64), torch.arange(4, dtype=torch.float64))
    assert out.shape == (3, 4)


def test_lower_to_torch_is_cached():
    fn = compile_expression("x * y")
    assert fn.lower_to_torch() is fn.lower_to_torch()


# ============================================================================
# CANONICAL FORM
# ============================================================================

def test_canonical_source_and_cache_key():
    """Whitespace and redundant parentheses do not change the cache key."""
    a = compile_expression("sqrt(x*x+y*y)")
    b = compile_expression("  sqrt( (x * x) + (y * y) ) ")
    c = compile_expression("sqrt(x*x-y*y)")

    assert a.to_source() == b.to_source() == "sqrt(((x * x) + (y * y)))"
    assert a.cache_key == b.cache_key
    assert a.cache_key != c.cache_key
    assert len(a.cache_key) == 64


def test_constant_folding():
    fn = compile_expression("x * (2 + 3) + sqrt(16)")
    assert fn.to_source() == "((x * 5.0) + 4.0)"
    assert fn(2.0, 0.0) == pytest.approx(14.0)


def test_canonical_source_recompiles():
    fn = compile_expression("-x ** 2 + min(y, 3, x) % 2")
    again = compile_expression(fn.to_source())
    for x, y in [(1.5, -2.0), (-3.0, 4.0), (0.0, 0.0)]:
        assert fn(x, y) == again(x, y)


def test_raw_tensor_lowering_keeps_non_finite():
    """coerce_nonfinite=False leaves NaN/Inf for the kernel to flag as degenerate."""
    fn = compile_expression("sqrt(x)")
    raw = fn.lower_to_torch(coerce_nonfinite=False)
    out = raw(torch.tensor([-1.0, 4.0], dtype=torch.float64), torch.zeros(2, dtype=torch.float64))
    assert torch.isnan(out[0])
    assert out[1].item() == 2.0
    assert raw is not fn.lower_to_torch()
    assert fn.lower_to_torch()(torch.tensor([-1.0], dtype=torch.float64), torch.tensor([0.0], dtype=torch.float64)).item() == 0.0
