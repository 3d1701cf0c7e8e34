"""
Loop policy: the fixed instructions the controller injects between model
calls, and the predicates that decide when a turn is finished.

Kept apart from the controller so the wording can be tuned without
touching the state machine.
"""

from __future__ import annotations

from typing import Iterable

from agentloop.tools.base import ToolResult

REMEMBER_SUFFIX = (
    " Remember: Never give generic responses like 'I successfully executed the action'. "
    "Always provide insights and be conversational."
)

FOLLOW_UP_PROMPTS: dict[str, str] = {
    "list_repos": (
        "You just listed repositories. Analyze what you found. If the user asked about a specific "
        "repo but it's not in the list, explain that you couldn't find it and suggest alternatives. "
        "If you did find relevant repos, use get_repo to explore them. Always provide a helpful "
        "response explaining what you found."
    ),
    "get_repo": (
        "You got repository details. Explain what this tells you about the project. Now use "
        "list_files to explore the structure. Continue the exploration autonomously."
    ),
    "list_files": (
        "You explored the file structure. Explain what kind of project this is based on the "
        "structure. Pick an important file to read next (like README.md) and use read_file to "
        "examine it."
    ),
    "read_file": (
        "You read a file. Explain what this code/content does. Continue exploring other important "
        "files or directories to build a complete understanding."
    ),
    "run_command": (
        "You executed a command. Explain what it accomplished. Continue with the next logical step "
        "in your exploration or task."
    ),
}

DEFAULT_FOLLOW_UP_PROMPT = (
    "Analyze the tool results above. Explain what you discovered and continue with the next tool "
    "if more work is needed. Keep going until you have a good understanding."
)

FAILURE_PROMPT = (
    "One or more tools failed. Analyze the error and either: 1) Retry with corrected parameters, "
    "2) Try an alternative tool/approach, or 3) Explain to the user why it failed and what they "
    "can do. Be proactive - don't just report the error."
)

ANALYZE_RESULTS_PROMPT = (
    "You must provide a response analyzing the tool results above. Look at what was discovered "
    "and provide insights. What's interesting about these results? What should we explore next? "
    "Be specific and helpful, not generic."
)

EXPLORATION_PROMPT = (
    "The user asked you to explore. Continue exploring by using more tools to discover "
    "interesting aspects. Don't stop after just listing - dive deeper into the structure "
    "and content."
)

THINKING_AFTER_TOOL: dict[str, str] = {
    "list_repos": "I can see the available repositories. Let me identify interesting ones...",
    "get_repo": "Now I have details about the repository. Let me analyze what this tells us...",
    "list_files": "The file structure reveals the project organization. Let me identify key files...",
    "read_file": "I've examined the code. Let me understand what it does...",
}
DEFAULT_THINKING_AFTER_TOOL = "Let me analyze what we discovered..."

EMPTY_ANSWER_FALLBACK = (
    "I wasn't able to produce an answer for that. Could you rephrase or give me a bit more detail?"
)


def contains_completion_phrase(text: str, phrases: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(phrase.lower() in lowered for phrase in phrases)


def is_exploration_request(user_message: str, keywords: Iterable[str]) -> bool:
    lowered = user_message.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def follow_up_prompt(last_tool: str, results: list[ToolResult]) -> str:
    """Instruction appended after a tool step, tailored to what just ran."""
    if any(not result.success for result in results):
        return FAILURE_PROMPT
    return FOLLOW_UP_PROMPTS.get(last_tool, DEFAULT_FOLLOW_UP_PROMPT) + REMEMBER_SUFFIX


def single_tool_note(executed: str, deferred: list[str]) -> str:
    names = ", ".join(f"'{name}'" for name in deferred)
    return (
        f"You requested {len(deferred) + 1} tools at once. Only '{executed}' was executed; "
        f"deferred: {names}. Proceed one tool at a time: analyze this result, then call the "
        f"next tool if it is still needed."
    )


def unknown_tool_note(requested: str, available: list[str]) -> str:
    catalogue = ", ".join(available) if available else "(no tools are registered)"
    return (
        f"Tool '{requested}' does not exist. Pick a valid tool from the catalogue: {catalogue}."
    )


def initial_status(user_message: str, has_tools: bool, exploration: bool) -> str:
    lowered = user_message.lower()
    if not has_tools:
        return "💬 Preparing response..."
    if exploration:
        return "🔍 Planning exploration strategy..."
    if "create" in lowered or "write" in lowered:
        return "✏️ Planning implementation..."
    return "🤔 Analyzing request and selecting approach..."


def fallback_summary(results: list[ToolResult]) -> str:
    """Templated answer built from raw tool output when the model stays silent."""
    return "Here's what I discovered:\n" + "\n".join(result.to_message() for result in results)


def iteration_cap_answer(partial_text: str, results: list[ToolResult], max_iterations: int) -> str:
    """Best-effort answer when the loop runs out of iterations."""
    parts = []
    if partial_text.strip():
        parts.append(partial_text.strip())
    parts.append(
        f"I reached the limit of {max_iterations} tool steps for this request. "
        f"Here are the latest results:"
    )
    parts.extend(result.to_message() for result in results[-3:])
    return "\n\n".join(parts)
