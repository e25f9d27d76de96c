"""
The goose's personality: execution statistics, the end-of-run code rating
and the flavor text printed around a run.

Messages are Mustache templates rendered with pystache and picked at
random; none of their wording is relied on by the interpreter.
"""
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pystache

from duck.duck_datatypes import ErrorKind

_renderer = pystache.Renderer(escape=lambda u: u)


@dataclass
class ExecutionStats:
    total_blocks: int = 0
    quacked_blocks: int = 0
    unquacked_blocks: int = 0
    functions_defined: int = 0
    structs_defined: int = 0
    loops_executed: int = 0

    @property
    def quack_ratio(self) -> float:
        if self.total_blocks == 0:
            return 1.0
        return self.quacked_blocks / self.total_blocks


TEMPLATES: Dict[str, List[str]] = {
    'startup': [
        "The goose is watching. Proceed.",
        "Honk. Let's see what you've written this time.",
        "Goose online. Quacks will be counted.",
    ],
    'success': [
        "Done. The goose is mildly impressed.",
        "Finished without incident. Suspicious, but fine.",
        "Program complete. *satisfied honk*",
        "That ran. The goose will allow it.",
    ],
    'refusal': [
        "Line {{line}}: no quack, no execution.",
        "Line {{line}}: this block was never blessed with a quack. Skipping it.",
        "Skipping line {{line}}. The goose did not hear a quack.",
        "Line {{line}}: *looks at the unquacked block* *waddles past it*",
        "Line {{line}}: quack status missing, execution status denied.",
    ],
    'goodbye': [
        "Goodbye! *waddles away*",
        "The goose has left the pond.",
        "Honk. See you next time.",
    ],
    'repl_welcome': [
        "Welcome to the goose REPL. Type 'exit' to leave.\n   Don't forget to quack!",
    ],
    'check_clean': [
        "All blocks are properly quacked! Honk!",
        "Every block has its quack. The goose approves.",
    ],
    'check_alert': [
        "QUACK ALERT! The following lines are missing quack:",
    ],
    'error': [
        "The goose is disappointed.",
        "*honks in dismay*",
        "Something went wrong, and the goose saw all of it.",
    ],
    ErrorKind.TYPE_ERROR.value: [
        "Those types do not go together. The goose checked.",
        "Wrong type. Not a duck. Not even a goose.",
    ],
    ErrorKind.UNDEFINED_VARIABLE.value: [
        "You used a name nobody introduced. The goose looked behind the pond.",
        "That name doesn't exist. Did you make it up?",
    ],
    ErrorKind.UNDEFINED_FIELD.value: [
        "That struct has no such field. The goose counted.",
    ],
    ErrorKind.DIVISION_BY_ZERO.value: [
        "Divide by zero? The goose is not falling for that.",
        "*attempts to divide by zero* *reality trembles* *goose refuses*",
    ],
    ErrorKind.INDEX_OUT_OF_RANGE.value: [
        "That index is past the end of the list. Geese can count, you know.",
    ],
    ErrorKind.ARITY_MISMATCH.value: [
        "Wrong number of arguments. The goose ordered a specific amount.",
    ],
    ErrorKind.CONVERSION_ERROR.value: [
        "That value refuses to be converted. The goose respects its stubbornness.",
    ],
    ErrorKind.FILE_ERROR.value: [
        "File trouble. Geese have excellent eyesight and still can't find it.",
    ],
    ErrorKind.NETWORK_ERROR.value: [
        "The network didn't answer. The goose honked into the void.",
    ],
    ErrorKind.VALUE_ERROR.value: [
        "Right type, wrong value. The goose expected better.",
    ],
    ErrorKind.ASSERTION_FAILED.value: [
        "HONK! Your own assertion turned on you.",
        "The honk has failed. So has your assumption.",
    ],
    ErrorKind.CONTROL_FLOW.value: [
        "That jump has nowhere to land.",
    ],
    ErrorKind.CIRCULAR_IMPORT.value: [
        "Modules importing each other in a circle. The goose is getting dizzy.",
    ],
    ErrorKind.LEX_ERROR.value: [
        "The goose can't even read that.",
    ],
    ErrorKind.PARSE_ERROR.value: [
        "That isn't valid Duck. The goose refuses to guess.",
    ],
}

QUIPS: Dict[int, str] = {
    1: "Did you write this with your feet? Webbed ones?",
    2: "The goose has seen better code scratched into mud.",
    3: "Quacks were few and far between.",
    4: "It runs. That's the nicest thing the goose can say.",
    5: "Perfectly average. The goose is unmoved.",
    6: "Not bad. Not good. Decent.",
    7: "Solid work. The goose nods approvingly.",
    8: "Well quacked! Structure and discipline.",
    9: "Excellent. The goose is almost proud.",
    10: "Flawless. The goose bows its long neck to you.",
}


def render(key: str, **context) -> str:
    templates = TEMPLATES.get(key) or TEMPLATES['error']
    return _renderer.render(random.choice(templates), context)


def startup() -> str:
    return render('startup')


def success() -> str:
    return render('success')


def refusal(line: int) -> str:
    return render('refusal', line=line)


def goodbye() -> str:
    return render('goodbye')


def repl_welcome() -> str:
    return render('repl_welcome')


def error_quip(kind: Optional[str]) -> str:
    return render(kind or 'error')


def rate_code(stats: ExecutionStats) -> Tuple[int, str]:
    """Scores a finished run from 1 to 10 and picks the matching quip."""
    score = stats.quack_ratio * 7.0
    if stats.functions_defined > 0:
        score += 1.0
    if stats.functions_defined >= 3:
        score += 0.5
    if stats.structs_defined > 0:
        score += 1.0
    if stats.loops_executed > 0:
        score += 0.5
    score -= min(stats.unquacked_blocks * 0.5, 3.0)
    final = max(1, min(10, int(round(score))))
    return final, QUIPS[final]


def rating_box(stats: ExecutionStats) -> str:
    score, quip = rate_code(stats)
    rule = "=" * 39
    return "\n".join([rule, f"  Goose rated your code: {score}/10", f'  "{quip}"', rule])


def check_report(unauthorized: List[int]) -> str:
    if not unauthorized:
        return render('check_clean')
    lines = [render('check_alert')]
    lines.extend(f"   Line {line}: No quack detected!" for line in unauthorized)
    lines.append("")
    lines.append(f"Remember: every block needs a quack to run. {len(unauthorized)} issue(s) found.")
    return "\n".join(lines)
