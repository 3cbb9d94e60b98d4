"""Render the prompt handed to an executor for a task."""

from __future__ import annotations

from typing import Iterable, Optional

from .domain.models import Memory, Project, Task, TaskType

DEFAULT_PROMPT_TEMPLATE = "Task: {{title}}\n\n{{body}}\n\nComplete this task and provide a summary when done."


def format_memories(memories: Iterable[Memory]) -> str:
    grouped: dict[str, list[str]] = {}
    for memory in memories:
        if memory.content.strip():
            grouped.setdefault(memory.category, []).append(memory.content.strip())
    parts: list[str] = []
    for category, contents in grouped.items():
        parts.append(f"## {category.capitalize()}")
        parts.extend(f"- {content}" for content in contents)
    return "\n".join(parts)


def build_prompt(
    task: Task,
    *,
    project: Optional[Project] = None,
    task_type: Optional[TaskType] = None,
    memories: Iterable[Memory] = (),
) -> str:
    template = (task_type.instructions if task_type and task_type.instructions else DEFAULT_PROMPT_TEMPLATE)
    instructions = project.instructions.strip() if project else ""
    memories_text = format_memories(memories)

    prompt = (
        template.replace("{{project}}", project.name if project else "")
        .replace("{{title}}", task.title)
        .replace("{{body}}", task.body)
        .replace("{{project_instructions}}", instructions)
        .replace("{{memories}}", memories_text)
    )

    # Templates without the placeholders still get the project context.
    if instructions and "{{project_instructions}}" not in template:
        prompt = f"{prompt}\n\n## Project Instructions\n{instructions}"
    if memories_text and "{{memories}}" not in template:
        prompt = f"{prompt}\n\n## Project Memories\n{memories_text}"
    return prompt.strip() + "\n"
