"""Run-scoped storage for the analysis/plan documents that steps hand to each other."""

import logging
from pathlib import Path
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

REFERENCE_HEADER = "\n\n---\n\n## Reference Documents (Context)"
REFERENCE_FOOTER = "\n\n**Please use the documents above as context for your work.**"


def document_key(path: str, docs_dir_name: str) -> str:
    """Normalize a recipe document path to its location inside the documents root.

    Recipes may name documents either bare (`analysis.md`) or with the
    conventional directory prefix (`.recipe-docs/analysis.md`); both map to
    the same file.
    """
    parts = PurePosixPath(path).parts
    if len(parts) > 1 and parts[0] == docs_dir_name:
        parts = parts[1:]
    if not parts or PurePosixPath(path).is_absolute() or ".." in parts:
        raise ValueError(f"Invalid document path: {path}")
    return "/".join(parts)


def render_document(path: str, content: str) -> str:
    """One delimited block of injected reference material."""
    body = content.rstrip("\n")
    return f"\n\n### Document: `{path}`\n\n{body}\n\n---"


def output_instruction(path: str) -> str:
    """Closing line for tasks whose response is saved as a document."""
    return f"\n\n---\n\n**IMPORTANT**: Save your complete response to the file: `{path}`"


def render_reference_section(blocks: list[str]) -> str:
    """Wrap rendered document blocks so the agent can tell them apart from the task."""
    if not blocks:
        return ""
    return REFERENCE_HEADER + "".join(blocks) + REFERENCE_FOOTER


class DocumentStore:
    """Reads and writes named text artifacts under one run-scoped directory.

    Writes overwrite (last write wins). Reads always come from disk so that
    content produced outside the runner is seen as well.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, path: str) -> Path:
        return self.root / document_key(path, self.root.name)

    def exists(self, path: str) -> bool:
        return self.path_for(path).is_file()

    def read(self, path: str) -> str | None:
        """Return the document's current content, or None if it has not been written."""
        file_path = self.path_for(path)
        try:
            return file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write(self, path: str, content: str) -> Path:
        """Persist content verbatim, replacing anything previously stored at path."""
        file_path = self.path_for(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        logger.debug("Wrote document %s (%d bytes)", file_path, len(content))
        return file_path

    def list(self) -> list[str]:
        """Keys of all documents currently stored."""
        if not self.root.is_dir():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file())
