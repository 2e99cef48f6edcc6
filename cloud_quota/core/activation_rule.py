"""
Activation rule evaluation.

Activation rules are small expressions written against the preset variables,
e.g. ``account.name == 'admin' && usageRecord.size > 1024``. They are parsed
with Python's ``ast`` module after the JavaScript operators are normalized,
checked against a whitelist of node types and interpreted by a visitor that
only reads the (frozen) preset variables. Nothing is ever executed by the host
interpreter.
"""

import ast
import operator
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Set

import structlog

from .errors import RuleEvaluationError
from .preset_variables import GenericPresetVariable, is_known_variable

logger = structlog.get_logger(__name__)

_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod, ast.FloorDiv,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn,
    ast.IfExp,
    ast.Constant,
    ast.Name, ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List, ast.Tuple,
)

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_MAX_STRING_LENGTH = 10000

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def normalize_rule(rule: str) -> str:
    """Rewrite JavaScript operators into their Python equivalents.

    String literals are copied untouched.
    """
    result = []
    quote = None
    i = 0
    while i < len(rule):
        char = rule[i]
        if quote:
            result.append(char)
            if char == "\\" and i + 1 < len(rule):
                result.append(rule[i + 1])
                i += 1
            elif char == quote:
                quote = None
            i += 1
            continue

        if char in ("'", '"'):
            quote = char
            result.append(char)
        elif rule.startswith("===", i) or rule.startswith("!==", i):
            result.append("==" if char == "=" else "!=")
            i += 2
        elif rule.startswith("&&", i):
            result.append(" and ")
            i += 1
        elif rule.startswith("||", i):
            result.append(" or ")
            i += 1
        elif char == "!" and not rule.startswith("!=", i):
            result.append(" not ")
        else:
            result.append(char)
        i += 1
    return "".join(result).strip()


@lru_cache(maxsize=512)
def parse_rule(rule: str) -> ast.Expression:
    """Parse and validate an activation rule.

    Raises:
        RuleEvaluationError: If the rule is not a valid expression of the
            supported grammar
    """
    source = normalize_rule(rule)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise RuleEvaluationError(f"Unable to parse activation rule: {e.msg}", rule) from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise RuleEvaluationError(f"Unsupported construct [{type(node).__name__}] in activation rule", rule)
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise RuleEvaluationError(f"Access to [{node.attr}] is not allowed", rule)
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise RuleEvaluationError(f"Access to [{node.id}] is not allowed", rule)
    return tree


def _is_blank(rule: Optional[str]) -> bool:
    return rule is None or not rule.strip()


def _truthy(value: Any) -> bool:
    if isinstance(value, GenericPresetVariable):
        return True
    return bool(value)


def _coerce_numbers(left: Any, right: Any):
    """Bring a Decimal and a float to a common type."""
    if isinstance(left, Decimal) and isinstance(right, float):
        return left, Decimal(str(right))
    if isinstance(left, float) and isinstance(right, Decimal):
        return Decimal(str(left)), right
    return left, right


class _RuleInterpreter(ast.NodeVisitor):
    """Interprets a validated rule tree against a preset variable context."""

    def __init__(self, context: GenericPresetVariable):
        self._context = context

    def generic_visit(self, node):
        raise RuleEvaluationError(f"Unsupported construct [{type(node).__name__}] in activation rule")

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Constant(self, node):
        return node.value

    def visit_List(self, node):
        return [self.visit(element) for element in node.elts]

    visit_Tuple = visit_List

    def visit_Name(self, node):
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        if not self._context.has_field(node.id):
            raise RuleEvaluationError(f"Unknown variable [{node.id}]")
        value = self._context.resolve(node.id)
        if value is None:
            raise RuleEvaluationError(f"Variable [{node.id}] is not set")
        return value

    def visit_Attribute(self, node):
        return self._member(self.visit(node.value), node.attr)

    def visit_Subscript(self, node):
        base = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(base, (list, tuple)):
            if isinstance(key, bool) or not isinstance(key, int):
                raise RuleEvaluationError(f"Invalid list index [{key}]")
            return base[key] if -len(base) <= key < len(base) else None
        if isinstance(key, str):
            return self._member(base, key)
        raise RuleEvaluationError(f"Invalid index [{key}]")

    def _member(self, base: Any, name: str) -> Any:
        if base is None:
            raise RuleEvaluationError(f"Cannot read property [{name}] of null")
        if isinstance(base, GenericPresetVariable):
            if not base.has_field(name):
                raise RuleEvaluationError(f"Unknown field [{name}] of {type(base).__name__}")
            return base.resolve(name)
        if isinstance(base, Mapping):
            return base.get(name)
        if name == "length" and isinstance(base, (str, list, tuple)):
            return len(base)
        raise RuleEvaluationError(f"Cannot read property [{name}] of {type(base).__name__}")

    def visit_BoolOp(self, node):
        # JavaScript semantics: the deciding operand is returned
        value = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not _truthy(value):
                return value
            if isinstance(node.op, ast.Or) and _truthy(value):
                return value
        return value

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not _truthy(operand)
        if isinstance(operand, bool) or not isinstance(operand, (int, float, Decimal)):
            raise RuleEvaluationError(f"Unary operator applied to non-numeric value [{operand}]")
        return -operand if isinstance(node.op, ast.USub) else +operand

    def visit_BinOp(self, node):
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            text = f"{_to_text(left)}{_to_text(right)}"
            if len(text) > _MAX_STRING_LENGTH:
                raise RuleEvaluationError(f"String result exceeds {_MAX_STRING_LENGTH} characters")
            return text
        for operand in (left, right):
            if not isinstance(operand, (int, float, Decimal)):
                raise RuleEvaluationError(
                    f"Operator [{type(node.op).__name__}] is not supported for {type(operand).__name__} values"
                )
        left, right = _coerce_numbers(left, right)
        return _BINARY_OPERATORS[type(node.op)](left, right)

    def visit_Compare(self, node):
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if isinstance(op, (ast.In, ast.NotIn)):
                if right is None:
                    raise RuleEvaluationError("Right-hand side of [in] is null")
                outcome = left in right
                if isinstance(op, ast.NotIn):
                    outcome = not outcome
            else:
                outcome = _COMPARISONS[type(op)](*_coerce_numbers(left, right))
            if not outcome:
                return False
            left = right
        return True

    def visit_IfExp(self, node):
        if _truthy(self.visit(node.test)):
            return self.visit(node.body)
        return self.visit(node.orelse)


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ActivationRuleEvaluator:
    """Evaluates tariff activation rules against preset variables."""

    def evaluate(self, rule: Optional[str], context: GenericPresetVariable) -> Any:
        """Evaluate ``rule`` and return its raw result.

        A blank rule always applies and evaluates to True without parsing.

        Raises:
            RuleEvaluationError: If the rule cannot be parsed or evaluated
        """
        if _is_blank(rule):
            return True

        tree = parse_rule(rule)
        if not context.is_frozen:
            context = context.copy().freeze()

        try:
            result = _RuleInterpreter(context).visit(tree)
        except RuleEvaluationError as e:
            if e.rule is None:
                e.rule = rule
            raise
        except (TypeError, ArithmeticError, RecursionError, MemoryError) as e:
            raise RuleEvaluationError(f"Error evaluating activation rule: {e}", rule) from e

        logger.debug("activation_rule_evaluated", rule=rule, result=result)
        return result

    def tariff_value(self, rule: Optional[str], context: GenericPresetVariable, currency_value: Decimal) -> Decimal:
        """Resolve the value a tariff contributes for this context.

        Returns:
            The tariff's value for a blank rule or a true result, the rule's
            numeric result when it returns a number, zero otherwise
        """
        if _is_blank(rule):
            return currency_value

        result = self.evaluate(rule, context)
        if isinstance(result, bool):
            return currency_value if result else Decimal("0")
        if isinstance(result, (int, float, Decimal)):
            return _finite_decimal(str(result))
        if isinstance(result, str):
            if result.strip().lower() == "true":
                return currency_value
            return _finite_decimal(result.strip())
        return Decimal("0")


def _finite_decimal(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


class _VariableCollector(ast.NodeVisitor):
    """Collects the dotted variable paths referenced by a rule."""

    def __init__(self):
        self.variables: Set[str] = set()

    def visit_Name(self, node):
        self._collect(node)

    def visit_Attribute(self, node):
        self._collect(node)

    def visit_Subscript(self, node):
        self._collect(node)

    def _collect(self, node):
        parts = []
        current = node
        while True:
            if isinstance(current, ast.Attribute):
                parts.append(current.attr)
                current = current.value
            elif isinstance(current, ast.Subscript):
                key = current.slice
                if isinstance(key, ast.Constant) and isinstance(key.value, str):
                    parts.append(key.value)
                else:
                    self.visit(key)
                current = current.value
            elif isinstance(current, ast.Name):
                if current.id not in _CONSTANTS:
                    parts.append(current.id)
                    self.variables.add(".".join(reversed(parts)))
                return
            else:
                self.visit(current)
                return


def extract_variables(rule: Optional[str]) -> Set[str]:
    """Return the distinct dotted variable paths a rule references.

    Indexed access is followed into the element shape, so
    ``processedData.tariffs[0].value`` yields ``processedData.tariffs.value``.

    Raises:
        RuleEvaluationError: If the rule cannot be parsed
    """
    if _is_blank(rule):
        return set()
    collector = _VariableCollector()
    collector.visit(parse_rule(rule))
    return collector.variables


def find_unknown_variables(rule: Optional[str], usage_type: Optional[int] = None) -> List[str]:
    """Return the variables of ``rule`` that rules of ``usage_type`` cannot use."""
    unknown = []
    for variable in sorted(extract_variables(rule)):
        if is_known_variable(variable, usage_type):
            continue
        if variable.endswith(".length") and is_known_variable(variable[:-len(".length")], usage_type):
            continue
        unknown.append(variable)
    return unknown
