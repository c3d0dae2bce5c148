"""Prompt rendering for delegated coding tasks."""

from __future__ import annotations

from pathlib import Path

from nightly_code.orchestrator.models import Task

_INSTRUCTIONS = (
    "Analyze the requirements carefully",
    "Implement the requested changes following project conventions",
    "Ensure all acceptance criteria are met",
    "Write appropriate tests if required",
    "Update documentation if necessary",
    "Follow the project's coding standards and style guide",
)


def render_task_prompt(task: Task, *, working_dir: Path, project_context: str = "") -> str:
    """Render the full agent prompt for one task."""

    criteria = (
        "\n".join(f"- {item}" for item in task.acceptance_criteria)
        if task.acceptance_criteria
        else "None specified"
    )
    files = ", ".join(task.files_to_modify) if task.files_to_modify else "Any relevant files"
    tags = ", ".join(task.tags) if task.tags else "-"
    steps = "\n".join(f"{index}. {step}" for index, step in enumerate(_INSTRUCTIONS, start=1))
    context = project_context.strip() or f"Working directory: {working_dir}"

    return (
        "# Automated Coding Task\n"
        "\n"
        "## Project Context\n"
        f"{context}\n"
        "\n"
        "## Task Details\n"
        f"**ID:** {task.id}\n"
        f"**Type:** {task.type.value}\n"
        f"**Title:** {task.title}\n"
        f"**Priority:** {task.priority}\n"
        f"**Tags:** {tags}\n"
        "\n"
        "**Requirements:**\n"
        f"{task.requirements}\n"
        "\n"
        "**Acceptance Criteria:**\n"
        f"{criteria}\n"
        "\n"
        f"**Estimated Duration:** {task.estimated_duration} minutes\n"
        f"**Files to Modify:** {files}\n"
        "\n"
        "## Instructions\n"
        f"{steps}\n"
        "\n"
        "## Time Constraints\n"
        f"- Maximum time for this task: {task.estimated_duration} minutes\n"
        "- Focus on completing the core requirements first\n"
        "\n"
        "Do not commit; the session runner commits validated work.\n"
    )
