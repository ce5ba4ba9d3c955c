"""
Helpers for producers: activity ids and objects, quiz answer statements.

Producers pass the results of these to Cmi5Engine.submit(). Malformed input
(e.g. an answer with nothing selected) is rejected here, before any
statement exists.
"""

import re
from urllib.parse import quote

from .constants import INTERACTION_TYPE, PAGE_TYPE
from .errors import InvalidInteractionError


def _slug(segment):
    text = re.sub(r"\s+", "-", str(segment))
    text = re.sub(r"[^\w\-.]", "", text)
    return quote(text[:50], safe="")


def make_activity_id(base, *segments):
    """Activity ids must be absolute IRIs: base/<slug>/<slug>..."""
    base = base.rstrip("/")
    slugs = [_slug(s) for s in segments]
    return "/".join([base, *slugs]) if slugs else base


def activity_object(base, path, name, activity_type=PAGE_TYPE):
    return {
        "id": make_activity_id(base, path),
        "objectType": "Activity",
        "definition": {
            "type": activity_type,
            "name": {"en-US": name},
        },
    }


def quiz_answer(base, question_id, prompt, choices, selected, correct, extensions=None):
    """
    Build the (object, result) pair for an "answered" choice interaction.

    choices: mapping of choice id → label
    selected / correct: choice id (or list of ids for multi-select)
    """
    selected_ids = _as_ids(selected)
    if not selected_ids:
        raise InvalidInteractionError(f"No answer selected for {question_id}")
    unknown = [c for c in selected_ids if c not in choices]
    if unknown:
        raise InvalidInteractionError(f"Unknown choice(s) {unknown} for {question_id}")
    correct_ids = _as_ids(correct)
    if not correct_ids:
        raise InvalidInteractionError(f"No correct answer defined for {question_id}")

    obj = {
        "id": make_activity_id(base, "interactions", question_id),
        "objectType": "Activity",
        "definition": {
            "type": INTERACTION_TYPE,
            "name": {"en-US": prompt},
            "interactionType": "choice",
            "choices": [
                {"id": cid, "description": {"en-US": label}}
                for cid, label in choices.items()
            ],
            "correctResponsesPattern": ["[,]".join(correct_ids)],
        },
    }
    result = {
        "success": sorted(selected_ids) == sorted(correct_ids),
        "response": "[,]".join(selected_ids),
    }
    if extensions:
        result["extensions"] = dict(extensions)
    return obj, result


def _as_ids(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if str(v).strip()]
