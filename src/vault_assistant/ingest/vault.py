"""Document collaborator interfaces and a filesystem-backed vault."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol


@dataclass(slots=True)
class DocumentStat:
    size: int
    mtime: float
    ctime: float


@dataclass(slots=True)
class ActiveDocument:
    """What the host reports about the focused document.

    `text` carries unsaved editor content when available; `cursor_offset` is
    only set when the document is open in an editable view.
    """

    path: str
    text: str | None = None
    cursor_offset: int | None = None
    selection: str | None = None


class DocumentSource(Protocol):
    """Minimal document collection contract used by indexing and tools."""

    def list_files(self) -> list[str]:
        """Return every vault-relative file path (POSIX separators)."""

    def exists(self, path: str) -> bool:
        """Whether a file or folder exists at `path`."""

    def is_dir(self, path: str) -> bool:
        """Whether `path` is a folder."""

    def read(self, path: str) -> str:
        """Read a document's current text."""

    def write(self, path: str, text: str) -> None:
        """Create or overwrite a document."""

    def stat(self, path: str) -> DocumentStat:
        """Size and timestamps of a file."""


def file_name(path: str) -> str:
    return PurePosixPath(path).name


def file_stem(path: str) -> str:
    return PurePosixPath(path).stem


def is_hidden(path: str) -> bool:
    return any(part.startswith(".") for part in PurePosixPath(path).parts)


def has_extension(path: str, extensions: tuple[str, ...]) -> bool:
    suffix = PurePosixPath(path).suffix.lower()
    return suffix in {extension.lower() for extension in extensions}


class FileSystemVault:
    """Vault rooted at a directory; every path is confined to the root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path escapes the vault: {path}")
        return candidate

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def list_files(self) -> list[str]:
        return sorted(
            self.relative(entry) for entry in self.root.rglob("*") if entry.is_file()
        )

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).exists()
        except ValueError:
            return False

    def is_dir(self, path: str) -> bool:
        try:
            return self.resolve(path).is_dir()
        except ValueError:
            return False

    def read(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, text: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")

    def delete(self, path: str) -> None:
        self.resolve(path).unlink(missing_ok=True)

    def stat(self, path: str) -> DocumentStat:
        info = self.resolve(path).stat()
        return DocumentStat(size=info.st_size, mtime=info.st_mtime, ctime=info.st_ctime)
