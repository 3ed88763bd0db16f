"""``{opts.X}`` placeholder rendering and ``if:`` guard evaluation.

Guards use a deliberately small grammar: ``a || b`` of ``c && !d`` terms,
no parentheses. Identifiers are looked up in a flag map; missing means false.
"""

from collections.abc import Mapping


def render_template(text: str, variables: Mapping[str, str]) -> str:
    """Replace every key of ``variables`` found in ``text`` with its value.

    Keys are full tokens such as ``{opts.Domain}``. Substituted values are not
    expanded again.
    """
    if not text or not variables:
        return text
    keys = sorted((k for k in variables if k), key=len, reverse=True)
    out = []
    i = 0
    while i < len(text):
        for key in keys:
            if text.startswith(key, i):
                out.append(variables[key])
                i += len(key)
                break
        else:
            out.append(text[i])
            i += 1
    return "".join(out)


def evaluate_condition(expr: str, flags: Mapping[str, bool]) -> bool:
    return any(_evaluate_and(part.strip(), flags) for part in expr.split("||"))


def _evaluate_and(expr: str, flags: Mapping[str, bool]) -> bool:
    return all(_evaluate_token(part.strip(), flags) for part in expr.split("&&"))


def _evaluate_token(token: str, flags: Mapping[str, bool]) -> bool:
    if not token:
        return False
    if token.startswith("!"):
        return not flags.get(token[1:].strip(), False)
    return flags.get(token, False)


def build_template_vars(
    strings: Mapping[str, str],
    booleans: Mapping[str, bool],
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """``{opts.Field}`` -> value for string and bool fields, then ``extra`` on top."""
    variables = {f"{{opts.{name}}}": value for name, value in strings.items()}
    for name, value in booleans.items():
        variables[f"{{opts.{name}}}"] = "true" if value else "false"
    if extra:
        variables.update(extra)
    return variables


def build_condition_flags(
    strings: Mapping[str, str],
    booleans: Mapping[str, bool],
    extra: Mapping[str, bool] | None = None,
) -> dict[str, bool]:
    """``opts.Field`` -> truthiness (non-blank for strings)."""
    flags = {f"opts.{name}": bool(value.strip()) for name, value in strings.items()}
    for name, value in booleans.items():
        flags[f"opts.{name}"] = value
    if extra:
        flags.update(extra)
    return flags


def answer_to_str(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(answer_to_str(v) for v in value)
    return str(value)


def wizard_answer_vars(answers: Mapping[str, object] | None) -> tuple[dict[str, str], dict[str, bool]]:
    """Turn wizard answers into template variables and condition flags.

    An answer id ``foo`` becomes ``{opts.foo}`` and ``opts.foo``; keys that are
    already brace-wrapped are used verbatim.
    """
    variables: dict[str, str] = {}
    flags: dict[str, bool] = {}
    for key, value in (answers or {}).items():
        text = answer_to_str(value)
        if key.startswith("{") and key.endswith("}"):
            variables[key] = text
            flag_name = key[1:-1]
        else:
            variables[f"{{opts.{key}}}"] = text
            flag_name = f"opts.{key}"
        if isinstance(value, bool):
            flags[flag_name] = value
        else:
            flags[flag_name] = bool(text.strip()) and text.strip().lower() != "false"
    return variables, flags
