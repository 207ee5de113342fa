import os
from typing import Dict, Optional

from iamgraph.errors import ConfigurationError
from iamgraph.models.resource import FileContent


class FileLoader:
    """Reads files referenced with file("...") as opaque blobs."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or os.getcwd()
        self._cache: Dict[str, FileContent] = {}

    def resolve(self, path: str) -> str:
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.join(self.base_dir, path)
        return os.path.normpath(path)

    def load(self, path: str) -> FileContent:
        full = self.resolve(path)
        if full not in self._cache:
            try:
                with open(full, "rb") as fh:
                    self._cache[full] = FileContent(path=path, data=fh.read())
            except OSError as exc:
                raise ConfigurationError(f"cannot read file '{path}': {exc.strerror}") from exc
        return self._cache[full]


class StaticFileLoader(FileLoader):
    """In-memory loader, keyed by the path exactly as written in the configuration."""

    def __init__(self, files: Dict[str, bytes]):
        super().__init__()
        self.files = files

    def load(self, path: str) -> FileContent:
        key = os.path.basename(path) if path not in self.files else path
        if key not in self.files:
            raise ConfigurationError(f"cannot read file '{path}': not provided")
        return FileContent(path=path, data=self.files[key])
