"""
Tests for scoring expression parsing.
"""

import math

import pytest

from orbit_evolution.ast_nodes import (
    BinaryOp, BinaryOperator, Constant, Elapsed, MassCount, TotalMass, UnaryOp,
    UnaryOperator, evaluate,
)
from orbit_evolution.parser import (
    ParseError, Parser, compile_expression, parse_expression, tokenize,
)
from orbit_evolution.simulation import Snapshot

SNAPSHOT = Snapshot(elapsed=5.0, total_mass=2.0, mass_count=3)


def value_of(source, snapshot=SNAPSHOT):
    return evaluate(parse_expression(source), snapshot)


class TestPrecedence:
    """Operator tiers and grouping."""

    def test_multiplication_binds_tighter_than_addition(self):
        assert value_of("3 + 4 * 2") == 11.0
        assert value_of("2 + 3 * 4") == 14.0

    def test_power_groups_left(self):
        assert value_of("2 ^ 3 ^ 2") == 64.0
        assert value_of("(2 ^ 3) ^ 2") == 64.0
        assert value_of("2 ^ (3 ^ 2)") == 512.0

    def test_subtraction_and_division_group_left(self):
        assert value_of("10 - 4 - 3") == 3.0
        assert value_of("64 / 4 / 2") == 8.0

    def test_parentheses_override_precedence(self):
        assert value_of("(3 + 4) * 2") == 14.0

    def test_unary_binds_tighter_than_power(self):
        assert value_of("-2 ^ 2") == 4.0
        assert value_of("2 * -3") == -6.0
        assert value_of("--3") == 3.0
        assert value_of("+3") == 3.0

    def test_tree_shape(self):
        tree = parse_expression("elapsed + total_mass * mass_count")
        assert tree == BinaryOp(
            Elapsed(), BinaryOperator.ADD,
            BinaryOp(TotalMass(), BinaryOperator.MULTIPLY, MassCount()))


class TestAtoms:
    """Identifiers and numeric literals."""

    def test_identifier_binding(self):
        assert value_of("elapsed") == 5.0
        assert value_of("total_mass") == 2.0
        assert value_of("mass_count") == 3.0

    def test_identifiers_are_case_insensitive(self):
        assert parse_expression("ELAPSED") == Elapsed()
        assert parse_expression("Total_Mass") == TotalMass()
        assert parse_expression("Mass_Count") == MassCount()

    @pytest.mark.parametrize("source,expected", [
        ("123", 123.0),
        ("123.", 123.0),
        (".456", 0.456),
        ("123.456", 123.456),
        ("1e3", 1000.0),
        ("2.5E-1", 0.25),
        ("4e+2", 400.0),
    ])
    def test_numeric_literal_forms(self, source, expected):
        assert parse_expression(source) == Constant(expected)

    def test_overflowing_literal_is_infinite(self):
        tree = parse_expression("1.5e99999")
        assert isinstance(tree, Constant)
        assert math.isinf(tree.value)

    def test_functions_need_call_syntax(self):
        assert parse_expression("ln(elapsed)") == UnaryOp(UnaryOperator.NATURAL_LOG, Elapsed())
        assert parse_expression("LOG(elapsed)") == UnaryOp(UnaryOperator.BASE10_LOG, Elapsed())
        with pytest.raises(ParseError):
            parse_expression("ln elapsed")

    def test_log_is_base_ten(self):
        assert value_of("log(1000)") == pytest.approx(3.0)
        assert value_of("ln(1)") == 0.0

    def test_example_expression(self):
        expected = 5.0 + math.log10(2.0) - 3.0
        assert value_of("elapsed + log(total_mass) - mass_count") == pytest.approx(expected)


class TestParseErrors:
    """Malformed input is rejected, never defaulted."""

    @pytest.mark.parametrize("source", [
        "",
        "   ",
        "1.2.3",
        "@",
        "1 +",
        "elapsed elapsed",
        "velocity",
        "(1 + 2",
        "1 + 2)",
        ")",
        "1e",
        "ln()",
        "3 $ 4",
    ])
    def test_rejected(self, source):
        with pytest.raises(ParseError):
            parse_expression(source)

    def test_malformed_literal_carries_cause(self):
        with pytest.raises(ParseError) as excinfo:
            parse_expression("1.2.3")
        assert isinstance(excinfo.value.cause, ValueError)
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert excinfo.value.offset == 0

    def test_invalid_symbol_offset(self):
        with pytest.raises(ParseError) as excinfo:
            parse_expression("elapsed @ 2")
        assert excinfo.value.offset == 8
        assert excinfo.value.column == 9

    def test_reports_line_and_column(self):
        with pytest.raises(ParseError) as excinfo:
            parse_expression("elapsed +\n  @")
        err = excinfo.value
        assert (err.line, err.column) == (2, 3)
        assert err.source_line == "  @"
        assert "line 2, column 3" in str(err)
        assert str(err).endswith("  @\n  ^")

    def test_unknown_identifier_names_it(self):
        with pytest.raises(ParseError, match="velocity"):
            parse_expression("velocity * 2")

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_expression("*")


class TestTokenizer:
    """Token stream details."""

    def test_tokens_end_with_end_marker(self):
        tokens = tokenize("ln(2)")
        assert [t.text for t in tokens] == ["ln", "(", "2", ")", ""]
        assert tokens[-1].offset == 5

    def test_whitespace_is_ignored(self):
        assert parse_expression(" 1\t+\n2 ") == parse_expression("1+2")


class TestCompile:
    """compile_expression parses then simplifies."""

    def test_constant_subtrees_are_folded(self):
        assert compile_expression("2 * 3 + elapsed") == BinaryOp(
            Constant(6.0), BinaryOperator.ADD, Elapsed())

    def test_compiled_value_matches_parsed(self):
        source = "elapsed * (1 + 1) - ln(total_mass / 1) + mass_count ^ 1"
        assert evaluate(compile_expression(source), SNAPSHOT) == pytest.approx(value_of(source))


class TestLargeExpressions:
    """Long and nested inputs parse without exhausting the call stack."""

    def test_long_flat_sum(self):
        tree = parse_expression(" + ".join(["elapsed"] * 3000))
        assert tree.get_depth() == 3000
        assert value_of(" + ".join(["elapsed"] * 3000)) == 15000.0
        assert evaluate(compile_expression(" - ".join(["mass_count"] * 3000)), SNAPSHOT) == -8994.0

    def test_long_sign_chain(self):
        assert value_of("-" * 1200 + "1") == 1.0
        assert value_of("-" * 1201 + "elapsed") == -5.0

    def test_nesting_up_to_the_limit(self):
        depth = Parser.MAX_NESTING
        assert value_of("(" * depth + "2" + ")" * depth) == 2.0
        assert value_of("0 + 1 * 1 ^ (" * depth + "2" + ")" * depth) == 1.0

    def test_nesting_past_the_limit(self):
        with pytest.raises(ParseError, match="nested too deeply") as excinfo:
            parse_expression("(" * 300 + "1" + ")" * 300)
        assert excinfo.value.offset == Parser.MAX_NESTING

    def test_nested_function_calls_count_towards_the_limit(self):
        with pytest.raises(ParseError, match="nested too deeply"):
            parse_expression("ln(" * 200 + "1" + ")" * 200)
