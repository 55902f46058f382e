from __future__ import annotations

from guiloop.agent.actions import ActionSchema
from guiloop.model.schema import ACTION_SPACE_DOCS

SYSTEM_TEMPLATE = """You are a GUI agent. You are given a task and your action history, with screenshots. You need to perform the next action to complete the task.

## Output Format
```
Thought: ...
Action: ...
```

## Action Space
{action_space}

## Note
- Use {language} in `Thought` part.
- {note}

## User Instruction
{instruction}
"""

NOTE_COMPUTER = (
    "Write a small plan and finally summarize your next action (with its target element) "
    "in one sentence in `Thought` part."
)
NOTE_MOBILE = (
    "Generate a well-defined and practical strategy in the `Thought` section, "
    "summarizing your next move and its objective."
)

# Appended to the last user turn when the previous step could not be carried out.
FEEDBACK_TEMPLATE = (
    "Your previous output could not be executed: {feedback}\n"
    "Look at the current screenshot and reply again in the required format."
)


def build_system_prompt(schema: ActionSchema, instruction: str = "", language: str = "English") -> str:
    docs = ACTION_SPACE_DOCS.get(schema.platform, ACTION_SPACE_DOCS["computer"])
    note = NOTE_MOBILE if schema.platform == "mobile" else NOTE_COMPUTER
    return SYSTEM_TEMPLATE.format(
        action_space="\n".join(docs),
        language=language,
        note=note,
        instruction=instruction,
    )


def feedback_text(feedback: str) -> str:
    return FEEDBACK_TEMPLATE.format(feedback=feedback)
