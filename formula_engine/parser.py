"""
Formula parser for the calculated-field formula engine
Parses formula strings into immutable AST nodes using a Lark LALR parser
"""

from dataclasses import dataclass
from typing import List, Optional, Set, Tuple, Union
import logging
import math
import threading

from lark import Lark, Transformer, v_args
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, UnexpectedToken

from formula_engine.exceptions import FormulaSyntaxError
from formula_engine.functions import get_function
from formula_engine.grammar import FORMULA_GRAMMAR
from formula_engine.utils.cache import FormulaCache, get_cache, hash_formula

logger = logging.getLogger(__name__)


# ============================================================================
# AST Nodes
# ============================================================================


@dataclass(frozen=True)
class NumberNode:
    value: float


@dataclass(frozen=True)
class VariableNode:
    name: str


@dataclass(frozen=True)
class FunctionCallNode:
    name: str
    arguments: Tuple["FormulaNode", ...]


@dataclass(frozen=True)
class BinaryOpNode:
    operator: str
    left: "FormulaNode"
    right: "FormulaNode"


@dataclass(frozen=True)
class UnaryOpNode:
    operator: str
    operand: "FormulaNode"


FormulaNode = Union[NumberNode, VariableNode, FunctionCallNode, BinaryOpNode, UnaryOpNode]


class FormulaTransformer(Transformer):
    """Transform the Lark parse tree into AST nodes."""

    @v_args(inline=True)
    def number(self, token):
        return NumberNode(float(token))

    @v_args(inline=True)
    def variable(self, token):
        # {name} -> name
        return VariableNode(str(token)[1:-1].strip())

    def function_call(self, items):
        name = str(items[0]).lower()
        args = tuple(items[1]) if len(items) > 1 and items[1] is not None else ()
        return FunctionCallNode(name, args)

    def arguments(self, items):
        return list(items)

    @v_args(inline=True)
    def add(self, left, right):
        return BinaryOpNode("+", left, right)

    @v_args(inline=True)
    def sub(self, left, right):
        return BinaryOpNode("-", left, right)

    @v_args(inline=True)
    def mul(self, left, right):
        return BinaryOpNode("*", left, right)

    @v_args(inline=True)
    def div(self, left, right):
        return BinaryOpNode("/", left, right)

    @v_args(inline=True)
    def pow(self, left, right):
        return BinaryOpNode("^", left, right)

    @v_args(inline=True)
    def neg(self, operand):
        return UnaryOpNode("-", operand)

    @v_args(inline=True)
    def pos(self, operand):
        return operand  # Positive is a no-op


# Lark builds its LALR tables once; parsing with the shared instance is reentrant
_lark_parser: Optional[Lark] = None
_lark_lock = threading.Lock()


def _get_lark() -> Lark:
    global _lark_parser
    if _lark_parser is None:
        with _lark_lock:
            if _lark_parser is None:
                _lark_parser = Lark(
                    FORMULA_GRAMMAR,
                    parser="lalr",
                    transformer=FormulaTransformer(),
                )
                logger.debug("Built formula grammar parser")
    return _lark_parser


# ============================================================================
# Pre-parse Checks
# ============================================================================


def check_braces(formula: str) -> None:
    """
    Check that every { is closed by a } before the next {

    Raises:
        FormulaSyntaxError: If braces are nested, unopened or unclosed
    """
    open_brace = False
    for char in formula:
        if char == "{":
            if open_brace:
                break
            open_brace = True
        elif char == "}":
            if not open_brace:
                break
            open_brace = False
    else:
        if not open_brace:
            return

    raise FormulaSyntaxError(
        code="unbalanced_braces",
        message="Unbalanced braces in formula",
        formula=formula,
    )


def check_parentheses(formula: str) -> None:
    """
    Check that parentheses outside variable references are balanced

    Assumes braces were already checked.

    Raises:
        FormulaSyntaxError: If a parenthesis is unmatched
    """
    depth = 0
    in_reference = False
    for char in formula:
        if char == "{":
            in_reference = True
        elif char == "}":
            in_reference = False
        elif in_reference:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                break

    if depth != 0:
        raise FormulaSyntaxError(
            code="mismatched_parentheses",
            message="Mismatched parentheses",
            formula=formula,
        )


# ============================================================================
# Parser
# ============================================================================


class FormulaParser:
    """
    Parser for calculated-field formulas

    Produces immutable AST nodes and rejects formulas that use unknown
    functions, wrong argument counts, or exceed the configured size limits.
    Parsed formulas are shared through an LRU cache when one is given.
    """

    def __init__(
        self,
        cache: Optional[FormulaCache] = None,
        max_formula_length: Optional[int] = None,
        max_ast_depth: Optional[int] = None,
        max_ast_nodes: Optional[int] = None,
    ):
        from formula_engine.config import get_settings
        settings = get_settings()

        self.cache = cache
        self.max_formula_length = max_formula_length or settings.max_formula_length
        self.max_ast_depth = max_ast_depth or settings.max_ast_depth
        self.max_ast_nodes = max_ast_nodes or settings.max_ast_nodes

    def parse(self, formula: str) -> FormulaNode:
        """
        Parse a formula string into an AST

        Args:
            formula: Formula string to parse

        Returns:
            AST root node

        Raises:
            FormulaSyntaxError: If the formula is empty, too long or invalid
        """
        if not isinstance(formula, str) or not formula.strip():
            raise FormulaSyntaxError(code="empty_formula", message="Formula is empty")

        formula = formula.strip()
        if len(formula) > self.max_formula_length:
            raise FormulaSyntaxError(
                code="formula_too_long",
                message=(
                    f"Formula is {len(formula)} characters long, exceeding "
                    f"maximum of {self.max_formula_length}"
                ),
                formula=formula,
            )

        cache_key = None
        if self.cache is not None:
            cache_key = hash_formula(formula)
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        check_braces(formula)
        check_parentheses(formula)

        try:
            tree = _get_lark().parse(formula)
        except UnexpectedCharacters as e:
            raise FormulaSyntaxError(
                message=f"Unrecognized character '{e.char}' at column {e.column}",
                formula=formula,
            ) from e
        except UnexpectedToken as e:
            if e.token.type == "$END":
                message = "Unexpected end of formula"
            else:
                message = f"Unexpected token '{e.token}' at column {e.column}"
            raise FormulaSyntaxError(message=message, formula=formula) from e
        except UnexpectedInput as e:
            raise FormulaSyntaxError(
                message=f"Invalid formula syntax: {e}", formula=formula
            ) from e

        self._check_structure(tree, formula)

        if cache_key is not None:
            self.cache.put(cache_key, tree)
        return tree

    def validate(self, formula: str) -> Tuple[bool, Optional[str]]:
        """
        Validate formula syntax

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            self.parse(formula)
            return True, None
        except FormulaSyntaxError as e:
            return False, e.message

    def _check_structure(self, tree: FormulaNode, formula: str) -> None:
        """
        Walk the AST iteratively checking size limits, literals and functions

        Depth counts nesting: a flat chain of same-precedence left-associative
        operators (a + b - c + ...) adds one level however long it is.

        Raises:
            FormulaSyntaxError: On the first violation found
        """
        node_count = 0
        stack: List[Tuple[FormulaNode, int]] = [(tree, 1)]

        while stack:
            node, depth = stack.pop()
            node_count += 1

            if depth > self.max_ast_depth or node_count > self.max_ast_nodes:
                raise FormulaSyntaxError(
                    code="formula_too_complex",
                    message=(
                        f"Formula is too complex (maximum nesting depth "
                        f"{self.max_ast_depth}, maximum {self.max_ast_nodes} terms)"
                    ),
                    formula=formula,
                )

            if isinstance(node, NumberNode):
                if not math.isfinite(node.value):
                    raise FormulaSyntaxError(
                        message="Malformed numeric literal: value out of range",
                        formula=formula,
                    )

            elif isinstance(node, VariableNode):
                if not node.name:
                    raise FormulaSyntaxError(
                        message="Empty variable reference", formula=formula
                    )

            elif isinstance(node, FunctionCallNode):
                func = get_function(node.name)
                if func is None:
                    raise FormulaSyntaxError(
                        code="unknown_function",
                        message=f"Unknown function: {node.name}",
                        formula=formula,
                    )
                if not func.accepts(len(node.arguments)):
                    raise FormulaSyntaxError(
                        code="invalid_function_args",
                        message=(
                            f"Function '{func.name}' expects {func.arity_description()}, "
                            f"got {len(node.arguments)}"
                        ),
                        formula=formula,
                    )
                for arg in node.arguments:
                    stack.append((arg, depth + 1))

            elif isinstance(node, BinaryOpNode):
                stack.append((node.right, depth + 1))
                # a + b + c parses left-deep; a flat chain is not nesting
                if _continues_chain(node, node.left):
                    stack.append((node.left, depth))
                else:
                    stack.append((node.left, depth + 1))

            elif isinstance(node, UnaryOpNode):
                stack.append((node.operand, depth + 1))


# Left-associative operators grouped by precedence
_CHAIN_PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2}


def _continues_chain(parent: BinaryOpNode, child: FormulaNode) -> bool:
    if not isinstance(child, BinaryOpNode) or parent.operator not in _CHAIN_PRECEDENCE:
        return False
    return _CHAIN_PRECEDENCE.get(child.operator) == _CHAIN_PRECEDENCE[parent.operator]


def collect_variables(tree: FormulaNode) -> List[str]:
    """
    Variable names referenced by an AST, distinct, in left-to-right order

    Args:
        tree: AST root

    Returns:
        List of variable names
    """
    names: List[str] = []
    seen: Set[str] = set()
    stack: List[FormulaNode] = [tree]

    while stack:
        node = stack.pop()
        if isinstance(node, VariableNode):
            if node.name not in seen:
                seen.add(node.name)
                names.append(node.name)
        elif isinstance(node, FunctionCallNode):
            stack.extend(reversed(node.arguments))
        elif isinstance(node, BinaryOpNode):
            stack.append(node.right)
            stack.append(node.left)
        elif isinstance(node, UnaryOpNode):
            stack.append(node.operand)

    return names


# Default parser shared by the module-level engine functions
_default_parser: Optional[FormulaParser] = None


def get_parser() -> FormulaParser:
    """
    Get the shared parser, wired to the global AST cache when enabled

    Returns:
        FormulaParser instance
    """
    global _default_parser
    if _default_parser is None:
        from formula_engine.config import get_settings
        settings = get_settings()
        cache = get_cache() if settings.ast_cache_enabled else None
        _default_parser = FormulaParser(cache=cache)
    return _default_parser
