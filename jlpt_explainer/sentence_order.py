"""Repair pass for ★ sentence-assembly explanations.

The pass walks a fixed sequence of states and never loops:

    PROPOSED -> PARTIALLY_ORDERED -> [REPAIRED] -> [DETERMINISTIC_FALLBACK] -> VALIDATED

At most one extra model call is made (the REPAIRED step), and the
deterministic fallback always completes the order, so the pass terminates
with ``ordered_options`` as a full permutation of the option keys and a
sentence that contains every option text in that order.
"""

import enum
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .explanation import (
    as_dict,
    as_list,
    normalize_option_key,
    normalize_sentence_order_solution,
    parse_loose_json,
    sorted_option_keys,
    text,
)
from .reading import ReadingAnnotator
from .structured import QuestionContext

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

STAR_CLUSTER_PATTERN = re.compile(r"(?:[＿_ー－\-〜～]+\s*)*★(?:\s*[＿_ー－\-〜～]+)*")

REPAIR_SYSTEM_PROMPT = "You are a JLPT teacher. Return valid JSON that follows the schema, nothing else."


class RepairState(str, enum.Enum):
    PROPOSED = "proposed"
    PARTIALLY_ORDERED = "partially_ordered"
    REPAIRED = "repaired"
    DETERMINISTIC_FALLBACK = "deterministic_fallback"
    VALIDATED = "validated"


@dataclass
class RepairOutcome:
    explanation: Dict[str, Any]
    states: List[RepairState] = field(default_factory=list)
    model_calls: int = 0
    sentence_rebuilt: bool = False


def unique_options(values: Sequence[Any], allowed: Sequence[str]) -> List[str]:
    allow = set(allowed)
    out: List[str] = []
    for value in values:
        option = normalize_option_key(value)
        if option and option in allow and option not in out:
            out.append(option)
    return out


def is_complete_order(ordered: Sequence[str], option_keys: Sequence[str]) -> bool:
    return len(ordered) == len(option_keys) and sorted(ordered) == sorted(option_keys)


def infer_order_from_sentence(sentence: str, options: Dict[str, str]) -> List[str]:
    """Option keys ordered by where their text first appears; longer texts win ties."""
    if not sentence:
        return []
    found = []
    for option, option_text in options.items():
        index = sentence.find(option_text) if option_text else -1
        if index >= 0:
            found.append((index, -len(option_text), normalize_option_key(option)))
    return [option for _, _, option in sorted(found)]


def sentence_contains_all(sentence: str, ordered: Sequence[str], options: Dict[str, str]) -> bool:
    if not sentence or not ordered:
        return False
    return all(options.get(o) and options[o] in sentence for o in ordered)


def sentence_order_consistent(sentence: str, ordered: Sequence[str], options: Dict[str, str]) -> bool:
    if not sentence or not ordered:
        return False
    cursor = -1
    for option in ordered:
        option_text = options.get(option, "")
        if not option_text:
            return False
        index = sentence.find(option_text, cursor + 1)
        if index < 0:
            return False
        cursor = index
    return True


def rebuild_sentence(ctx: QuestionContext, ordered: Sequence[str]) -> str:
    """Put the ordered fragments where the ★ blank cluster sits in the question."""
    ordered_text = "".join(ctx.options.get(o, "") for o in ordered)
    base = ctx.question_with_blank or ctx.question_text
    if not base:
        return ordered_text
    replaced = STAR_CLUSTER_PATTERN.sub(lambda _: ordered_text, base, count=1)
    replaced = replaced.replace("★", ordered_text)
    if replaced == base:
        replaced = f"{base} {ordered_text}"
    return re.sub(r"\s+", " ", replaced).strip()


class SentenceOrderRepair:
    def __init__(self, model: Any, annotator: ReadingAnnotator) -> None:
        self.model = model
        self.annotator = annotator

    async def run(self, ctx: QuestionContext, explanation: Dict[str, Any]) -> RepairOutcome:
        outcome = RepairOutcome(explanation=explanation, states=[RepairState.PROPOSED])
        if ctx.question_type != "sentence_order":
            return outcome

        keys = sorted_option_keys(ctx.options)
        solution = dict(explanation.get("sentence_order_solution")
                        or normalize_sentence_order_solution({}, ctx))

        expected = unique_options(ctx.expected_order, keys)
        if is_complete_order(expected, keys):
            solution["ordered_options"] = expected
        inferred = infer_order_from_sentence(solution["ordered_sentence_ja"], ctx.options)
        merged = unique_options(list(solution["ordered_options"]) + inferred, keys)
        if merged:
            solution["ordered_options"] = merged
        outcome.states.append(RepairState.PARTIALLY_ORDERED)

        if keys and not is_complete_order(solution["ordered_options"], keys):
            outcome.model_calls += 1
            repaired = await self.request_repair(ctx, solution, keys)
            if repaired is not None:
                if repaired["ordered_sentence_ja"] != solution["ordered_sentence_ja"]:
                    repaired["ordered_sentence_reading_hira"] = ""
                    repaired["ordered_sentence_ruby_html"] = ""
                solution = repaired
                outcome.states.append(RepairState.REPAIRED)

        if not is_complete_order(solution["ordered_options"], keys):
            solution["ordered_options"] = unique_options(list(solution["ordered_options"]) + keys, keys)
            outcome.states.append(RepairState.DETERMINISTIC_FALLBACK)

        solution["star_option"] = ctx.correct_answer or solution.get("star_option", "")

        sentence = solution["ordered_sentence_ja"]
        ordered = solution["ordered_options"]
        if not (sentence_contains_all(sentence, ordered, ctx.options)
                and sentence_order_consistent(sentence, ordered, ctx.options)):
            solution["ordered_sentence_ja"] = rebuild_sentence(ctx, ordered)
            solution["ordered_sentence_reading_hira"] = ""
            solution["ordered_sentence_ruby_html"] = ""
            outcome.sentence_rebuilt = True

        if solution["ordered_sentence_ja"]:
            if not solution["ordered_sentence_reading_hira"]:
                solution["ordered_sentence_reading_hira"] = await self.annotator.to_reading_hiragana(
                    solution["ordered_sentence_ja"])
            if not solution["ordered_sentence_ruby_html"]:
                solution["ordered_sentence_ruby_html"] = await self.annotator.to_ruby_html(
                    solution["ordered_sentence_ja"])

        if not solution["reason_vi"] and is_complete_order(expected, keys):
            solution["reason_vi"] = f"Thứ tự được chuẩn hoá theo đáp án chuẩn của đề: {'→'.join(expected)}."

        outcome.states.append(RepairState.VALIDATED)
        outcome.explanation = {**explanation, "sentence_order_solution": solution}
        if DEBUG_MODE:
            print(f"✅ Sentence order {'-'.join(solution['ordered_options'])} "
                  f"via {' → '.join(s.value for s in outcome.states)}")
        return outcome

    def build_repair_prompt(self, ctx: QuestionContext, solution: Dict[str, Any], keys: List[str]) -> str:
        options_text = "\n".join(f"{k}. {ctx.options.get(k, '')}" for k in keys)
        keys_json = json.dumps(keys)
        return f"""You are fixing the answer to a JLPT ★ sentence-assembly question.
Return ONLY JSON, no other text.
Sentence with the blanks: {ctx.question_with_blank or ctx.question_text}
Correct answer (the ★ slot): {ctx.correct_answer}
Options:
{options_text}
Current ordered_options: {', '.join(solution['ordered_options']) or '(empty)'}
Current ordered_sentence_ja: {solution['ordered_sentence_ja'] or '(empty)'}

Hard constraints:
- ordered_options must contain all of {', '.join(keys)}, each exactly once.
- ordered_sentence_ja must be the full sentence with every fragment in place.

Schema:
{{
  "ordered_options": {keys_json},
  "ordered_sentence_ja": "string",
  "reason_vi": "string"
}}"""

    async def request_repair(self, ctx: QuestionContext, solution: Dict[str, Any],
                             keys: List[str]) -> Optional[Dict[str, Any]]:
        """Ask the model once for a complete order; None unless it returns one."""
        try:
            raw = await self.model.prompt(self.build_repair_prompt(ctx, solution, keys),
                                          system=REPAIR_SYSTEM_PROMPT, temperature=0)
            row = as_dict(parse_loose_json(raw))
        except Exception as e:
            print(f"⚠️ Sentence order repair call failed: {e}")
            return None

        ordered = unique_options(as_list(row.get("ordered_options")), keys)
        if not is_complete_order(ordered, keys):
            if DEBUG_MODE:
                print(f"⚠️ Repair returned an incomplete order: {ordered}")
            return None
        return {
            **solution,
            "ordered_options": ordered,
            "ordered_sentence_ja": text(row.get("ordered_sentence_ja")) or solution["ordered_sentence_ja"],
            "reason_vi": text(row.get("reason_vi")) or solution["reason_vi"],
        }
