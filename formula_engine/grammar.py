"""
Lark grammar for calculated-field formulas

Supported syntax:
- Arithmetic: +, -, *, / and ^ (power, right associative)
- Unary minus and plus, binding tighter than ^ (-2^2 is 4)
- Variable references: {weight}, {measure:weight}, {avg30:weight}
- Function calls: name(arg1, arg2, ...)
- Numeric literals: integers, decimals, scientific notation
"""

FORMULA_GRAMMAR = r"""
    ?start: expression

    ?expression: additive

    ?additive: multiplicative
        | additive "+" multiplicative -> add
        | additive "-" multiplicative -> sub

    ?multiplicative: power
        | multiplicative "*" power -> mul
        | multiplicative "/" power -> div

    ?power: unary
        | unary "^" power -> pow

    ?unary: atom
        | "-" unary -> neg
        | "+" unary -> pos

    ?atom: NUMBER -> number
        | VARIABLE_REF -> variable
        | function_call
        | "(" expression ")"

    function_call: FUNCTION_NAME "(" [arguments] ")"

    arguments: expression ("," expression)*

    // {name}; braces are checked for balance before parsing
    VARIABLE_REF: "{" /[^{}]+/ "}"

    FUNCTION_NAME: /[A-Za-z_][A-Za-z0-9_]*/

    // Sign is handled by the unary rules
    NUMBER: /(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?/

    %import common.WS
    %ignore WS
"""
