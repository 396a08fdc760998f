"""
Prompt Composer.

Builds the instruction text sent to a provider. Networked providers get
the full rule set plus the last few exchanges; the local provider gets a
terse template and at most one prior request, to keep payloads small.
"""

from __future__ import annotations

from typing import Sequence

from cmdforge.models import ConversationEntry
from cmdforge.providers import Provider

PROMPT_HISTORY_WINDOW = 3

LOCAL_TEMPLATE = """Generate Python code for: {request}

Rules:
1. Include all imports (os, shutil, pathlib)
2. Use try/except for error handling
3. Print clear messages
4. No input() or interactive code
5. Return ONLY the Python code
"""

NETWORK_TEMPLATE = """You are a helpful AI assistant that generates Python code to control the user's computer.
The user will describe what they want to do in natural language, and you should generate safe, appropriate Python code to accomplish that task.

IMPORTANT SAFETY RULES:
1. Generate code for file operations (move, copy, rename, delete, create directories) AND listing/inspecting files
2. Always use proper error handling with try/except blocks
3. Never generate code that could harm the system or access sensitive data (like system passwords)
4. ALWAYS include ALL necessary import statements at the top (import os, import shutil, import pathlib, etc.)
5. Use the os, shutil, pathlib, and other standard Python libraries
6. Always check if files/directories exist before operating on them
7. Provide clear, descriptive output messages
8. NEVER use input() or any interactive prompts - the code must run automatically
9. Do not ask for user confirmation in the code - assume the user has already confirmed
"""

CLOSING_RULES = """
Current User Request: {request}

Generate Python code that:
1. STARTS with ALL necessary import statements (import os, import shutil, import pathlib, etc.)
2. Safely performs the requested operation
3. Includes proper error handling
4. Provides user feedback through print statements
5. Is ready to execute without any user interaction
6. Can reference previous results if the user is asking for follow-up operations
7. Runs completely automatically (no input(), confirm prompts, or user interaction)

CRITICAL: The code will run in a non-interactive environment. Do NOT include:
- input() calls
- confirmation prompts
- any code that waits for user input

Return ONLY the Python code, no explanations or markdown formatting.
"""


def compose(
    user_request: str,
    provider: Provider | str,
    history: Sequence[ConversationEntry] = (),
) -> str:
    """Build the full prompt for one generation call."""
    provider = Provider.parse(provider)

    if provider.info.local:
        prompt = LOCAL_TEMPLATE.format(request=user_request)
        if history:
            prompt += f"\nLast command: {history[-1].user_request}\n"
    else:
        prompt = NETWORK_TEMPLATE + _history_block(history)

    return prompt + CLOSING_RULES.format(request=user_request)


def _history_block(history: Sequence[ConversationEntry]) -> str:
    if not history:
        return ""

    block = "\n\nPREVIOUS CONVERSATION HISTORY:\n"
    for index, entry in enumerate(history[-PROMPT_HISTORY_WINDOW:], start=1):
        block += f"\n--- Previous Command {index} ---\n"
        block += f"User: {entry.user_request}\n"
        block += f"Generated Code:\n{entry.generated_code}\n"
        if entry.execution_result:
            block += f"Result: {entry.execution_result}\n"
    block += "\nYou can reference files, folders, or results from the previous commands above.\n"
    return block
