"""Prompt construction for task agents."""

# Memory above roughly this many words should be compressed by the agent.
MEMORY_COMPRESS_WORDS = 5000


def build_prompt(memory: str, description: str, memory_file: str | None = None) -> str:
    """Build the agent prompt from the task's memory and its user request.

    When memory_file is given the agent is told where to write its updated
    summary; otherwise the scheduler saves the agent's output as memory.
    """
    parts = []
    parts.append(
        "# Task\n"
        "Carry out the user request below on your own, working in the current directory."
    )

    parts.append(f"\n# Context from Memory\n{memory.strip() or 'No previous memory available.'}")

    parts.append(f"\n# User Request\n{description}")

    parts.append(
        "\n# Instructions\n"
        "1. Research or compute what the request asks for.\n"
        "2. Save results as files in the current working directory with descriptive names "
        "(CSV for tabular data, PDF or Markdown for reports).\n"
        "3. Do not use emojis in file names or file content.\n"
        "4. When finished, update the task memory with a summary of what you did, "
        "what you found, and anything the next run should know.\n"
        f"5. If the memory exceeds about {MEMORY_COMPRESS_WORDS} words, compress it: keep recent "
        "and important findings, summarize older entries into short bullet points."
    )

    if memory_file:
        parts.append(
            f"\n# Memory File\nWrite the full updated memory to `{memory_file}`, "
            "replacing its previous content."
        )

    parts.append(
        "\n# Working Autonomously\n"
        "Make reasonable assumptions instead of asking questions. Pick sensible defaults "
        "for ambiguous details and finish the task. Only stop if the task is impossible "
        "without more information, and say why."
    )

    parts.append(
        "\n# Recurring Tasks\n"
        "If the request describes a schedule (daily, weekly, every N hours), record the "
        "pattern and anything that must be tracked across runs in the memory summary."
    )

    return "\n".join(parts)
