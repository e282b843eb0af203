# parser.py
# Turns raw reasoning text into Action values.
#
# The model proposes effects as tags:
#   <action type="write" path="/self/journal.md" mode="append">...</action>
# Unknown kinds and invalid attribute values are dropped with a warning.
# Parsing never fails the cycle.

import logging
import re

from pydantic import ValidationError

from moral_agent.models import ACTION_ADAPTER, ACTION_KINDS, ACTION_MODELS, Action

logger = logging.getLogger(__name__)

ACTION_PATTERN = re.compile(r"<action\s+([^>]*)>([\s\S]*?)</action>")
ATTR_PATTERN = re.compile(r"([\w-]+)=\"([^\"]*)\"")

# Tag attribute → model field. Only fields the kind's model declares are kept.
ATTRIBUTE_FIELDS: dict[str, str] = {
    "path": "path",
    "mode": "mode",
    "to": "recipient",
    "url": "url",
    "cron": "cron",
    "label": "label",
    "timeout": "timeout_ms",
    "workingDir": "working_dir",
    "aspectRatio": "aspect_ratio",
    "taskType": "task_type",
}


def _fields_for(kind: str) -> frozenset[str]:
    return frozenset(ACTION_MODELS[kind].model_fields)


def parse_actions(text: str) -> list[Action]:
    actions: list[Action] = []

    for match in ACTION_PATTERN.finditer(text):
        attrs = dict(ATTR_PATTERN.findall(match.group(1)))
        kind = attrs.pop("type", None)

        if kind not in ACTION_KINDS:
            logger.warning("Skipping action with invalid type", extra={"data": {"type": kind, "attrs": attrs}})
            continue

        fields = _fields_for(kind)
        payload: dict = {"kind": kind, "content": match.group(2).strip()}
        for attr, value in attrs.items():
            name = ATTRIBUTE_FIELDS.get(attr)
            if name and name in fields and value != "":
                payload[name] = value

        try:
            actions.append(ACTION_ADAPTER.validate_python(payload))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed action",
                extra={"data": {"type": kind, "errors": exc.error_count()}},
            )

    if not actions and "<action" in text:
        logger.warning("Found <action tags but could not parse any valid actions")

    return actions
