import json
import re
from typing import Literal, Optional

Strategy = Literal["json", "code", "default"]

# A document is treated as code when at least this many heuristics match.
CODE_HEURISTIC_MIN_MATCHES = 2

CODE_HEURISTICS = [
    # declarations
    re.compile(r"\bfunction\s+\w+\s*\("),
    re.compile(r"\bconst\s+\w+\s*=\s*(?:async\s*)?\("),
    re.compile(r"\bdef\s+\w+\s*\("),
    re.compile(r"\bclass\s+\w+"),
    # modules
    re.compile(r"\bimport\s+.*\s+from\s+"),
    re.compile(r"\brequire\s*\("),
    re.compile(r"\bexport\s+(?:default\s+)?(?:function|class|const|let|var)"),
    # brace/semicolon line endings on two lines
    re.compile(r"[{};]\s*\n.*[{};]\s*\n"),
    # method chaining
    re.compile(r"\.\w+\([^)]*\)\.\w+\("),
    # arrow functions
    re.compile(r"=>\s*{"),
    # type annotations
    re.compile(r":\s*(?:string|number|boolean|void|any|unknown)\b"),
]

RELEVANCE_FILTER = (
    "CRITICAL: Extract only information that helps achieve the goal below. "
    "Completely omit sections, fields, or details that are irrelevant - they "
    "waste tokens and distract from the purpose."
)


def is_code_like(content: str) -> bool:
    matches = sum(1 for pattern in CODE_HEURISTICS if pattern.search(content))
    return matches >= CODE_HEURISTIC_MIN_MATCHES


def detect_strategy(content: str) -> Strategy:
    """Classify content as ``json``, ``code`` or ``default``."""
    try:
        json.loads(content)
        return "json"
    except (ValueError, RecursionError):
        pass
    if is_code_like(content):
        return "code"
    return "default"


def _document_block(strategy: Strategy, content: str) -> str:
    if strategy == "default":
        return f"<document>\n{content}\n</document>"
    return f'<document type="{strategy}">\n{content}\n</document>'


def _standard_task(strategy: Strategy, custom: str, token_limit: str) -> str:
    if strategy == "json":
        body = (
            "Compress the JSON above while preserving structure and important values. "
            "Remove redundant whitespace, shorten keys if possible, and summarize "
            f"repeated patterns.{custom}\n\n"
            f"{token_limit}\n"
            "Output only the compressed JSON, no explanations."
        )
    elif strategy == "code":
        body = (
            "Summarize the code above while preserving:\n"
            "- Function/class signatures and parameters\n"
            "- Key logic and algorithms\n"
            "- Important comments\n"
            "- Return types and values\n\n"
            f"Remove non-critical implementation details.{custom}\n\n"
            f"{token_limit}\n"
            "Output only the summarized code or pseudocode, no explanations."
        )
    else:
        body = (
            "Summarize the document above while preserving all important information, "
            f"facts, and data. Remove redundancy and verbose language.{custom}\n\n"
            f"{token_limit}\n"
            "Output only the compressed text, no explanations."
        )
    return f"<task>\n{body}\n</task>"


def _goal_task(strategy: Strategy, custom: str, token_limit: str) -> str:
    if strategy == "json":
        body = (
            "Extract JSON data relevant to the goal.\n\n"
            f"{RELEVANCE_FILTER}\n\n"
            "- Keep structure intact for extracted data\n"
            "- Remove irrelevant keys/objects entirely\n"
            f"- Summarize repeated patterns if relevant{custom}\n\n"
            f"{token_limit}\n"
            "Output only the extracted JSON, no explanations."
        )
    elif strategy == "code":
        body = (
            "Extract code relevant to the goal.\n\n"
            f"{RELEVANCE_FILTER}\n\n"
            "For extracted code, preserve:\n"
            "- Function/class signatures and parameters\n"
            "- Key logic and algorithms\n"
            "- Important comments\n"
            "- Return types and values\n\n"
            f"Omit functions, classes, and sections unrelated to the goal.{custom}\n\n"
            f"{token_limit}\n"
            "Output only the extracted code or summary, no explanations."
        )
    else:
        body = (
            "Extract information from the document that serves the goal.\n\n"
            f"{RELEVANCE_FILTER}\n\n"
            "- Focus on facts, data, and details that help achieve the objective\n"
            "- Omit tangential information, background, and unrelated sections\n"
            f"- Be direct and actionable{custom}\n\n"
            f"{token_limit}\n"
            "Output only the extracted information, no explanations."
        )
    return f"<task>\n{body}\n</task>"


def build_compression_prompt(
    strategy: Strategy,
    content: str,
    max_tokens: Optional[int] = None,
    goal: Optional[str] = None,
    custom_instructions: Optional[str] = None,
) -> str:
    """
    Build the model prompt for one compression.

    The document always comes first and the instructions last. With a goal the
    task switches to relevance extraction and the ``<goal>`` block is appended
    after the task so it is the final thing the model reads.
    """
    token_limit = (
        f"Keep your response under {max_tokens} tokens."
        if max_tokens
        else "Be concise while retaining helpful details."
    )
    custom = f"\nADDITIONAL INSTRUCTIONS: {custom_instructions}" if custom_instructions else ""
    document = _document_block(strategy, content)

    if goal:
        task = _goal_task(strategy, custom, token_limit)
        return f"{document}\n\n{task}\n\n<goal>\n{goal}\n</goal>"

    task = _standard_task(strategy, custom, token_limit)
    return f"{document}\n\n{task}"
