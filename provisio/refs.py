"""
Reference resolution for manifest parameters and conditions.

Two namespaces are resolvable against a RunContext:
- @ctx.*  -> run variables (manifest vars overlaid with operator overrides)
- @env.*  -> environment snapshot taken when the run context was created

A string that is exactly one reference resolves to the referenced value with
its type preserved ("@ctx.retries" -> 3). References embedded in a longer
string are substituted as text ("@env.HOME/.config" -> "/home/dev/.config").

Conditions ("when") are simple expressions:
- "@ctx.setup_ssl"              -> truthiness of the value
- "@ctx.os_family == 'debian'"  -> comparison against a literal or reference
- "not @ctx.is_ec2"             -> negation
"""

import re
from typing import Any, Mapping

from provisio.errors import ResolutionError


# Reference pattern: @namespace.path.to.value
REF_PATTERN = re.compile(
    r"@(ctx|env)\.([a-zA-Z_][a-zA-Z0-9_]*(?:\.[a-zA-Z_][a-zA-Z0-9_]*)*)"
)


def resolve_reference(ref: str, variables: Mapping[str, Any], env: Mapping[str, str]) -> Any:
    """
    Resolve a single reference string.

    Args:
        ref: Reference string like "@ctx.domain" or "@env.HOME"
        variables: Run variables (@ctx.*)
        env: Environment snapshot (@env.*)

    Returns:
        The resolved value

    Raises:
        ResolutionError: If the reference cannot be resolved
    """
    match = REF_PATTERN.fullmatch(ref)
    if not match:
        raise ResolutionError(f"Invalid reference format: {ref}")

    namespace, path = match.group(1), match.group(2)

    if namespace == "env":
        # Environment names are flat; dotted paths are not meaningful here
        if path not in env:
            raise ResolutionError(f"Environment variable not set: {ref}")
        return env[path]

    value: Any = variables
    for part in path.split("."):
        if isinstance(value, Mapping):
            if part not in value:
                raise ResolutionError(f"Reference path not found: {ref} (missing '{part}')")
            value = value[part]
        else:
            raise ResolutionError(f"Cannot navigate into non-mapping at '{part}' in {ref}")
    return value


def resolve_value(value: Any, variables: Mapping[str, Any], env: Mapping[str, str]) -> Any:
    """
    Recursively resolve references in a value.

    Args:
        value: The value to resolve (may be str, dict, list, or primitive)
        variables: Run variables
        env: Environment snapshot

    Returns:
        The resolved value

    Raises:
        ResolutionError: If a reference cannot be resolved
    """
    if isinstance(value, str):
        if "@" not in value:
            return value
        if REF_PATTERN.fullmatch(value):
            return resolve_reference(value, variables, env)
        return REF_PATTERN.sub(
            lambda m: str(resolve_reference(m.group(0), variables, env)), value
        )
    elif isinstance(value, dict):
        return {k: resolve_value(v, variables, env) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_value(v, variables, env) for v in value]
    else:
        return value


def evaluate_condition(condition: str, variables: Mapping[str, Any], env: Mapping[str, str]) -> bool:
    """
    Evaluate a step condition against the run context.

    Args:
        condition: The condition string
        variables: Run variables
        env: Environment snapshot

    Returns:
        Boolean result of the condition

    Raises:
        ResolutionError: If the condition is invalid or references are missing
    """
    condition = condition.strip()
    if not condition:
        raise ResolutionError("Empty condition")

    if condition.startswith("not "):
        return not evaluate_condition(condition[4:], variables, env)

    # Simple reference case: "@ctx.enabled"
    if REF_PATTERN.fullmatch(condition):
        return _truthy(resolve_reference(condition, variables, env))

    # Literal case: "true" / "false" (a YAML boolean in the manifest)
    if condition.lower() in ("true", "false"):
        return condition.lower() == "true"

    # Expression case: "@ctx.mode == 'prod'"
    for op, op_func in [
        ("==", lambda a, b: a == b),
        ("!=", lambda a, b: a != b),
        (">=", lambda a, b: a >= b),
        ("<=", lambda a, b: a <= b),
        (">", lambda a, b: a > b),
        ("<", lambda a, b: a < b),
    ]:
        if op in condition:
            left, right = (part.strip() for part in condition.split(op, 1))
            left_val = _operand(left, variables, env)
            right_val = _operand(right, variables, env)
            try:
                return bool(op_func(left_val, right_val))
            except TypeError as e:
                raise ResolutionError(f"Cannot compare in condition '{condition}': {e}")

    raise ResolutionError(f"Cannot evaluate condition: {condition}")


def _operand(token: str, variables: Mapping[str, Any], env: Mapping[str, str]) -> Any:
    if token.startswith("@"):
        return resolve_reference(token, variables, env)
    return parse_literal(token)


def _truthy(value: Any) -> bool:
    # "false"/"no"/"0" arrive as strings from --var and the environment
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off", "none")
    return bool(value)


def parse_literal(s: str) -> Any:
    """Parse a literal value from a string."""
    s = s.strip()

    # String literals
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1]

    # Boolean literals
    if s.lower() == "true":
        return True
    if s.lower() == "false":
        return False

    # None/null
    if s.lower() in ("none", "null"):
        return None

    # Numeric literals
    try:
        if "." in s:
            return float(s)
        return int(s)
    except ValueError:
        pass

    # Return as-is
    return s
