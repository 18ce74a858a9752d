import os
from pathlib import Path
from typing import List, Generator

class FileScanner:
    """Recursively scans a directory for media files."""

    def __init__(self, extensions: List[str]):
        self.extensions = {(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions}

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Scans the directory and yields absolute media file paths.

        Hidden files and directories are skipped, as is anything that
        cannot be read.
        """
        for root, dirs, files in os.walk(str(root_dir.resolve())):
            root_path = Path(root)

            # Ensure deterministic traversal and prune hidden directories
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            files.sort()

            for file_name in files:
                if file_name.startswith("."):
                    continue
                file_path = root_path / file_name
                if file_path.suffix.lower() not in self.extensions:
                    continue
                try:
                    if not file_path.is_file():
                        continue
                except OSError:
                    continue
                yield file_path
