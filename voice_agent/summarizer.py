"""Directory summarization collaborator for the summarize_dir tool."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from voice_agent.llm import ChatProvider, ModelCallFailed

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".md", ".txt", ".log")

# Modes that can run on the user prompt alone.
NO_FILE_MODES = ("email", "generator")

MODE_PROMPTS = {
    "summarizer": (
        "You are a precise document summarizer. Analyze and summarize documents "
        "with clear structure and citations.",
        "Summarize the provided documents.\n\nUser request: {prompt}\n\nGuidelines:\n"
        "- Use bullet points and clear structure\n"
        "- Always cite sources: (source: filename.ext)\n"
        "- End with Key Findings and Sources list\n\nFiles:\n{headers}",
    ),
    "email": (
        "You are an expert email writer. Create professional, well-structured emails "
        "based on the provided context and requirements.",
        "Write a professional email based on the context below.\n\nUser request: {prompt}\n\n"
        "Context from files:\n{headers}\n\nInstructions:\n"
        "- Use professional email format (Subject, greeting, body, closing)\n"
        "- Be concise and actionable\n- Reference sources when relevant",
    ),
    "analyzer": (
        "You are a senior software architect and code analyst. Analyze codebases, "
        "identify patterns, architecture, and provide technical insights.",
        "Analyze the codebase structure and provide technical insights.\n\n"
        "User request: {prompt}\n\nFiles to analyze:\n{headers}\n\nProvide:\n"
        "- Architecture overview\n- Key components and their relationships\n"
        "- Technologies and frameworks used\n- Code quality observations\n- Recommendations",
    ),
    "generator": (
        "You are an expert software engineer. Generate clean, well-documented code "
        "based on requirements and reference materials.",
        "Generate code based on the requirements below.\n\nUser request: {prompt}\n\n"
        "Reference materials:\n{headers}\n\nGenerate:\n- Clean, well-commented code\n"
        "- Include usage examples if applicable\n- Explain key design decisions",
    ),
}


@dataclass
class SummaryResult:
    """Outcome of a directory summary."""

    ok: bool
    output: str = ""
    file_count: int = 0
    tokens: int = 0
    error: str | None = None


@dataclass
class Document:
    rel: str
    text: str


class DirectorySummarizer(Protocol):
    async def summarize(
        self,
        dir_path: str | None,
        prompt: str = "",
        options: dict | None = None,
    ) -> SummaryResult: ...


def build_messages(mode: str, prompt: str, docs: list[Document], max_chars: int) -> list[dict[str, str]]:
    """Build the chat messages for a summary request."""
    system, guidance = MODE_PROMPTS.get(mode, MODE_PROMPTS["summarizer"])
    headers = "\n".join(f"- {doc.rel}" for doc in docs)
    combined = "".join(
        f"\n\n===== BEGIN {doc.rel} =====\n{doc.text}\n===== END {doc.rel} =====" for doc in docs
    )

    messages = [
        {"role": "system", "content": system},
        {"role": "user", "content": guidance.format(prompt=prompt, headers=headers)},
    ]
    if combined:
        messages.append({"role": "user", "content": combined[:max_chars]})
    return messages


class TextDirectorySummarizer:
    """Summarizes the plain-text documents of a directory with a chat model.

    Only text formats are read here. PDF, DOCX and CSV parsing belong to
    external parsers and those files are skipped.
    """

    def __init__(self, provider: ChatProvider, max_files: int = 40, max_chars: int = 120_000):
        self.provider = provider
        self.max_files = max_files
        self.max_chars = max_chars

    async def summarize(
        self,
        dir_path: str | None,
        prompt: str = "",
        options: dict | None = None,
    ) -> SummaryResult:
        options = options or {}
        mode = options.get("mode") or "summarizer"

        if mode in NO_FILE_MODES and not dir_path:
            return await self._complete(mode, prompt, [])

        if not dir_path or not Path(dir_path).expanduser().is_dir():
            return SummaryResult(ok=False, error="Please select a valid directory.")

        root = Path(dir_path).expanduser()
        include = options.get("include") or {"pdf": True, "docx": True, "csv": True, "md": True}
        if not include.get("md"):
            return SummaryResult(ok=False, error="No supported files found in the selected folder.")

        files = self._gather(root)
        if not files:
            return SummaryResult(ok=False, error="No supported files found in the selected folder.")

        docs = []
        for path in files[: self.max_files]:
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Skipping unreadable file %s: %s", path, e)
                continue
            if text.strip():
                docs.append(Document(rel=path.relative_to(root).as_posix(), text=text))

        if not docs:
            return SummaryResult(
                ok=False,
                error="Could not extract text from any files.",
            )

        result = await self._complete(mode, prompt, self._pack(docs))
        result.file_count = len(docs)
        return result

    def _gather(self, root: Path) -> list[Path]:
        return sorted(
            path
            for path in root.rglob("*")
            if path.is_file()
            and path.suffix.lower() in TEXT_SUFFIXES
            and not any(part.startswith(".") for part in path.relative_to(root).parts)
        )

    def _pack(self, docs: list[Document]) -> list[Document]:
        """Smallest documents first, truncated to the character budget."""
        packed = []
        total = 0
        for doc in sorted(docs, key=lambda d: len(d.text)):
            if total >= self.max_chars:
                break
            text = doc.text[: self.max_chars - total]
            packed.append(Document(rel=doc.rel, text=text))
            total += len(text)
        return packed

    async def _complete(self, mode: str, prompt: str, docs: list[Document]) -> SummaryResult:
        messages = build_messages(mode, prompt, docs, self.max_chars)
        logger.info("Summarizing %d documents in %s mode", len(docs), mode)
        try:
            output = await self.provider.complete(messages)
        except ModelCallFailed as e:
            return SummaryResult(ok=False, error=str(e), file_count=len(docs))

        tokens = getattr(self.provider, "last_usage_tokens", 0)
        return SummaryResult(
            ok=True,
            output=output or "(no content)",
            file_count=len(docs),
            tokens=tokens if isinstance(tokens, int) else 0,
        )
