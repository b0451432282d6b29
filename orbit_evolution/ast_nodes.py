"""
orbit_evolution/ast_nodes.py - Scoring expression tree nodes and evaluation
"""
import enum
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, List, Optional, Union

import numpy as np

Number = Union[float, np.ndarray]


class UnaryOperator(enum.Enum):
    """Operators applied to a single operand"""
    POSITIVE = '+'
    NEGATIVE = '-'
    NATURAL_LOG = 'ln'
    BASE10_LOG = 'log'

    def apply(self, value: Number) -> Number:
        if self is UnaryOperator.POSITIVE:
            return np.positive(value)
        elif self is UnaryOperator.NEGATIVE:
            return np.negative(value)
        elif self is UnaryOperator.NATURAL_LOG:
            return np.log(value)
        else:
            return np.log10(value)

    @property
    def parenthesized(self) -> bool:
        """Whether the operand is written in call syntax, e.g. ln(x)"""
        return self in (UnaryOperator.NATURAL_LOG, UnaryOperator.BASE10_LOG)


class BinaryOperator(enum.Enum):
    """Operators applied to two operands"""
    ADD = '+'
    SUBTRACT = '-'
    MULTIPLY = '*'
    DIVIDE = '/'
    EXPONENT = '^'

    def apply(self, left: Number, right: Number) -> Number:
        if self is BinaryOperator.ADD:
            return np.add(left, right)
        elif self is BinaryOperator.SUBTRACT:
            return np.subtract(left, right)
        elif self is BinaryOperator.MULTIPLY:
            return np.multiply(left, right)
        elif self is BinaryOperator.DIVIDE:
            return np.divide(left, right)
        else:
            return np.power(left, right)

    @property
    def precedence(self) -> int:
        """Higher binds tighter"""
        if self in (BinaryOperator.ADD, BinaryOperator.SUBTRACT):
            return 1
        elif self in (BinaryOperator.MULTIPLY, BinaryOperator.DIVIDE):
            return 2
        return 3


# Precedence used when printing: unary ops bind tighter than any binary op,
# atoms bind tightest.
UNARY_PRECEDENCE = 4
ATOM_PRECEDENCE = 5


def postorder(node: 'ASTNode') -> Iterator['ASTNode']:
    """Yield every node of a tree, children before parents, left to right.

    Uses an explicit stack, so arbitrarily deep trees (a long sum such as
    "elapsed + elapsed + ..." nests one level per term) never hit the
    interpreter's recursion limit.
    """
    stack = [(node, False)]
    while stack:
        current, expanded = stack.pop()
        if expanded or not current.children:
            yield current
        else:
            stack.append((current, True))
            stack.extend((child, False) for child in reversed(current.children))


def fold(node: 'ASTNode', combine: Callable[['ASTNode', List[Any]], Any]) -> Any:
    """Reduce a tree bottom-up; combine gets each node and its children's results"""
    results: List[Any] = []
    for current in postorder(node):
        arity = len(current.children)
        operands = results[len(results) - arity:]
        del results[len(results) - arity:]
        results.append(combine(current, operands))
    return results[0]


class ASTNode(ABC):
    """Base class for all scoring expression nodes.

    Subclasses describe a single node: how it combines its operands' values
    and how it prints around its operands' text. Walking the tree is done
    here, without recursion.
    """

    children = ()

    @abstractmethod
    def apply(self, observation, operands: List[Number]) -> Number:
        """This node's value given its children's values"""
        pass

    @abstractmethod
    def format(self, operands: List[str]) -> str:
        """This node's text given its children's text"""
        pass

    def token(self) -> tuple:
        """Identity of this node alone; a postfix sequence of tokens is the tree"""
        return (type(self),)

    def with_children(self, children: List['ASTNode']) -> 'ASTNode':
        return self

    def evaluate(self, observation) -> Number:
        """Evaluate against anything exposing elapsed, total_mass and mass_count.

        Works on a single Snapshot (scalars) or a Trajectory (column arrays).
        Callers are expected to silence numpy floating point warnings; see
        evaluate() below.
        """
        return fold(self, lambda node, operands: node.apply(observation, operands))

    @property
    def precedence(self) -> int:
        return ATOM_PRECEDENCE

    def get_all_nodes(self) -> List['ASTNode']:
        """Get all nodes in this subtree"""
        return list(postorder(self))

    def get_depth(self) -> int:
        """Get maximum depth of this subtree"""
        return fold(self, lambda node, depths: 1 + max(depths, default=0))

    def _key(self) -> tuple:
        return tuple(node.token() for node in postorder(self))

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ASTNode):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __reduce__(self):
        # Pickle the flat postfix form; the default would recurse per level.
        return from_postfix, (self._key(),)

    def __str__(self):
        return fold(self, lambda node, operands: node.format(operands))

    def __repr__(self) -> str:
        return fold(self, lambda node, operands: node.describe(operands))

    def describe(self, operands: List[str]) -> str:
        return f"{type(self).__name__}()"


class Elapsed(ASTNode):
    """Simulated seconds elapsed at the observed tick"""

    def apply(self, observation, operands) -> Number:
        return np.asarray(observation.elapsed, dtype=np.float64)

    def format(self, operands):
        return 'elapsed'


class TotalMass(ASTNode):
    """Sum of the masses of the observed bodies"""

    def apply(self, observation, operands) -> Number:
        return np.asarray(observation.total_mass, dtype=np.float64)

    def format(self, operands):
        return 'total_mass'


class MassCount(ASTNode):
    """Number of observed bodies, read as a float"""

    def apply(self, observation, operands) -> Number:
        return np.asarray(observation.mass_count, dtype=np.float64)

    def format(self, operands):
        return 'mass_count'


class Constant(ASTNode):
    """Numeric constant"""

    def __init__(self, value: float):
        self._value = float(value)

    @property
    def value(self) -> float:
        return self._value

    def apply(self, observation, operands) -> Number:
        return np.float64(self._value)

    def token(self) -> tuple:
        # NaN constants compare by identity of representation, not IEEE equality.
        return (Constant, repr(self._value))

    def describe(self, operands) -> str:
        return f"Constant({self._value!r})"

    def format(self, operands):
        text = repr(self._value)
        return text[:-2] if text.endswith('.0') else text


class UnaryOp(ASTNode):
    """Prefix sign or logarithm applied to one subexpression"""

    def __init__(self, op: UnaryOperator, child: ASTNode):
        self._op = op
        self._child = child

    @property
    def op(self) -> UnaryOperator:
        return self._op

    @property
    def child(self) -> ASTNode:
        return self._child

    @property
    def children(self):
        return (self._child,)

    @property
    def precedence(self) -> int:
        return UNARY_PRECEDENCE

    def with_children(self, children):
        return UnaryOp(self._op, children[0])

    def apply(self, observation, operands) -> Number:
        return self._op.apply(operands[0])

    def token(self) -> tuple:
        return (UnaryOp, self._op)

    def describe(self, operands) -> str:
        return f"UnaryOp({self._op.name}, {operands[0]})"

    def format(self, operands):
        if self._op.parenthesized or self._child.precedence < UNARY_PRECEDENCE:
            return f"{self._op.value}({operands[0]})"
        return f"{self._op.value}{operands[0]}"


class BinaryOp(ASTNode):
    """Arithmetic on two subexpressions"""

    def __init__(self, left: ASTNode, op: BinaryOperator, right: ASTNode):
        self._left = left
        self._op = op
        self._right = right

    @property
    def left(self) -> ASTNode:
        return self._left

    @property
    def op(self) -> BinaryOperator:
        return self._op

    @property
    def right(self) -> ASTNode:
        return self._right

    @property
    def children(self):
        return (self._left, self._right)

    @property
    def precedence(self) -> int:
        return self._op.precedence

    def with_children(self, children):
        return BinaryOp(children[0], self._op, children[1])

    def apply(self, observation, operands) -> Number:
        return self._op.apply(operands[0], operands[1])

    def token(self) -> tuple:
        return (BinaryOp, self._op)

    def describe(self, operands) -> str:
        return f"BinaryOp({operands[0]}, {self._op.name}, {operands[1]})"

    def format(self, operands):
        lhs, rhs = operands
        # Every tier groups to the left, so a right operand of equal
        # precedence needs parentheses and a left one does not.
        if self._left.precedence < self.precedence:
            lhs = f"({lhs})"
        if self._right.precedence <= self.precedence:
            rhs = f"({rhs})"
        return f"{lhs} {self._op.value} {rhs}"


def from_postfix(tokens) -> ASTNode:
    """Rebuild a tree from the token sequence of ASTNode._key()"""
    stack: List[ASTNode] = []
    for token in tokens:
        kind = token[0]
        if kind is Constant:
            stack.append(Constant(float(token[1])))
        elif kind is UnaryOp:
            stack.append(UnaryOp(token[1], stack.pop()))
        elif kind is BinaryOp:
            right = stack.pop()
            stack.append(BinaryOp(stack.pop(), token[1], right))
        else:
            stack.append(kind())
    if len(stack) != 1:
        raise ValueError("Token sequence does not describe a single expression")
    return stack[0]


def evaluate(expr: ASTNode, observation) -> float:
    """Evaluate an expression against one snapshot; never raises.

    Invalid operations follow IEEE-754 (NaN, +-inf) instead of erroring.
    """
    with np.errstate(all='ignore'):
        return float(expr.evaluate(observation))


def evaluate_many(expr: ASTNode, observations) -> np.ndarray:
    """Evaluate an expression once per row of a trajectory"""
    with np.errstate(all='ignore'):
        values = expr.evaluate(observations)
    return np.broadcast_to(np.asarray(values, dtype=np.float64), (len(observations),))


def transform_postorder(node: ASTNode,
                        visitor: Callable[[ASTNode], Optional[ASTNode]]) -> ASTNode:
    """Rebuild a tree bottom-up, letting the visitor replace any node"""
    def rebuild(current: ASTNode, children: List[ASTNode]) -> ASTNode:
        if any(new is not old for new, old in zip(children, current.children)):
            current = current.with_children(children)
        replacement = visitor(current)
        return current if replacement is None else replacement
    return fold(node, rebuild)


def _is_constant(node: ASTNode, value: float) -> bool:
    return isinstance(node, Constant) and node.value == value


def _fold(node: ASTNode) -> Optional[ASTNode]:
    # Never drop a subtree whose NaN could reach the result: 0 * x and 0 / x
    # are left alone because x may be NaN.
    if isinstance(node, BinaryOp):
        left, op, right = node.left, node.op, node.right
        if isinstance(left, Constant) and isinstance(right, Constant):
            with np.errstate(all='ignore'):
                return Constant(float(op.apply(np.float64(left.value), np.float64(right.value))))
        if op is BinaryOperator.MULTIPLY:
            if _is_constant(left, 1.0):
                return right
            if _is_constant(right, 1.0):
                return left
        elif op is BinaryOperator.DIVIDE:
            if _is_constant(right, 1.0):
                return left
        elif op is BinaryOperator.ADD:
            if _is_constant(left, 0.0):
                return right
            if _is_constant(right, 0.0):
                return left
        elif op is BinaryOperator.SUBTRACT:
            if _is_constant(left, 0.0):
                return UnaryOp(UnaryOperator.NEGATIVE, right)
            if _is_constant(right, 0.0):
                return left
        elif op is BinaryOperator.EXPONENT:
            if _is_constant(right, 1.0):
                return left
            # pow(x, 0) is 1 even for NaN and inf.
            if _is_constant(right, 0.0):
                return Constant(1.0)
    elif isinstance(node, UnaryOp):
        if isinstance(node.child, Constant):
            with np.errstate(all='ignore'):
                return Constant(float(node.op.apply(np.float64(node.child.value))))
        if node.op is UnaryOperator.POSITIVE:
            return node.child
        if (node.op is UnaryOperator.NEGATIVE and isinstance(node.child, UnaryOp)
                and node.child.op is UnaryOperator.NEGATIVE):
            return node.child.child
    return None


def simplify(expr: ASTNode) -> ASTNode:
    """Precompute constant subtrees and drop no-op operations"""
    return transform_postorder(expr, _fold)


VARIABLES = {
    'elapsed': Elapsed,
    'total_mass': TotalMass,
    'mass_count': MassCount,
}

FUNCTIONS = {
    'ln': UnaryOperator.NATURAL_LOG,
    'log': UnaryOperator.BASE10_LOG,
}
