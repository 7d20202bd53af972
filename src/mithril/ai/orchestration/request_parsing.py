"""Heuristics that pull concrete arguments out of a free-text request."""

from __future__ import annotations

import re

__all__ = [
    "extract_command",
    "filename_from_message",
    "filename_from_reply",
    "folder_name_from_message",
    "clean_generated_content",
]

_COMMAND_WORDS = frozenset(
    {
        "npm", "npx", "yarn", "pnpm", "pip", "pip3", "conda", "brew", "apt", "poetry",
        "git", "curl", "wget", "make", "cmake", "gradle", "mvn", "cargo",
        "python", "python3", "node", "java", "go", "ruby", "php",
        "docker", "podman", "kubectl", "helm",
        "ls", "mkdir", "cp", "mv", "rm", "chmod", "find", "grep", "cat", "echo",
        "pytest", "uvicorn", "gunicorn",
    }
)
_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:pip3?|npm|yarn|pnpm|conda|brew|poetry)\s+(?:install|add)\s+[\w\-.@/=<>]+", re.I),
    re.compile(r"\bgit\s+(?:clone|push|pull|add|commit|status|checkout|branch|log|diff)\b(?:\s+[^\s,;]+)?", re.I),
    re.compile(r"\b(?:curl|wget)\s+(?:-\w+\s+)*https?://\S+", re.I),
    re.compile(r"\b(?:node|python3?)\s+[\w.\-/]+\.(?:js|py)\b", re.I),
    re.compile(r"\bdocker\s+(?:run|build|pull|push|exec|ps)\b(?:\s+[^\s,;]+)?", re.I),
    re.compile(r"\b(?:npm|yarn|pnpm)\s+(?:start|dev|build|test|install|run\s+[\w:-]+)\b", re.I),
    re.compile(r"\b(?:mkdir|cp|mv|rm|ls|cat)\s+[\w.\-/]+", re.I),
)
_BACKTICK = re.compile(r"`([^`\n]+)`")
_RUN_PHRASE = re.compile(r"\b(?:run|execute)\s+[\"']([^\"'\n]+)[\"']", re.I)
_FILE_EXTENSIONS = (
    "html|htm|css|scss|js|mjs|ts|jsx|tsx|vue|py|json|md|txt|java|kt|c|h|cpp|hpp|cs|go|rs|rb|php|"
    "sh|yml|yaml|toml|xml|sql|ini|cfg"
)
_NAMED_FILE = re.compile(r"\b(?:called|named)\s+[\"'`]?([\w.\-]+\.\w+)", re.I)
_BARE_FILE = re.compile(rf"(?<![\w/.-])([\w\-]+\.(?:{_FILE_EXTENSIONS}))\b", re.I)
_REPLY_FILE = re.compile(r"[\w\-]+\.[A-Za-z0-9]{1,8}\b")
_FOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:folder|directory)\b.*?\b(?:called|named)\s+[\"'`]?([^\s\"'`]+)", re.I),
    re.compile(r"(?:create|make|add)\b.*?\b(?:folder|directory)\s+[\"'`]?([^\s\"'`]+)", re.I),
    re.compile(r"(?:create|make|add)\s+(?:an?\s+|the\s+)?[\"'`]?([^\s\"'`]+)[\"'`]?\s+(?:folder|directory)", re.I),
)
_FOLDER_STOPWORDS = frozenset({"a", "an", "the", "for", "in", "to", "with", "that", "called", "named", "new", "and"})
_FENCED = re.compile(r"```[ \t]*[\w+#.-]*[ \t]*\n(.*?)```", re.DOTALL)
_INTRO_LINE = re.compile(r"^\s*(?:(?:here|sure|certainly|below|okay)\b|(?:this|the following)\b.*:\s*$)", re.I)


def extract_command(message: str) -> str | None:
    """Return the shell command a request asks to run, if one can be found."""

    text = (message or "").strip()
    if not text:
        return None
    quoted = _BACKTICK.search(text) or _RUN_PHRASE.search(text)
    if quoted:
        return quoted.group(1).strip()
    for pattern in _COMMAND_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip().rstrip(".,;")
    lowered = text.lower()
    if "install" in lowered and "dependencies" in lowered:
        return "npm install"
    words = text.split()
    for index, word in enumerate(words):
        if word.lower() in _COMMAND_WORDS:
            return " ".join(words[index : index + 4]).rstrip(".,;!?")
    return None


def filename_from_message(message: str) -> str | None:
    match = _NAMED_FILE.search(message or "") or _BARE_FILE.search(message or "")
    return match.group(1).rstrip(".") if match else None


def filename_from_reply(reply: str) -> str | None:
    cleaned = (reply or "").replace("`", " ").replace('"', " ").replace("'", " ")
    match = _REPLY_FILE.search(cleaned)
    return match.group(0) if match else None


def folder_name_from_message(message: str) -> str | None:
    for pattern in _FOLDER_PATTERNS:
        match = pattern.search(message or "")
        if not match:
            continue
        name = match.group(1).strip().strip(".,;:!?\"'`")
        if name and name.lower() not in _FOLDER_STOPWORDS:
            return name
    return None


def clean_generated_content(text: str) -> str:
    """Strip chat framing from generated file content.

    The largest fenced block wins; without fences, leading introduction
    lines are dropped.
    """

    blocks = [block.strip("\n") for block in _FENCED.findall(text or "")]
    if blocks:
        return max(blocks, key=len).rstrip() + "\n"
    lines = (text or "").strip().split("\n")
    while lines and _INTRO_LINE.match(lines[0]):
        lines.pop(0)
    body = "\n".join(lines).strip()
    return f"{body}\n" if body else ""
