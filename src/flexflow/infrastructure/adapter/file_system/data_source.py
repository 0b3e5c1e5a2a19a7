import csv
import io
import os
import tempfile
from pathlib import Path
from typing import Any

import msgspec
import structlog

from flexflow.domain.error import ExecutionError
from flexflow.domain.port import DataSource

logger = structlog.get_logger(__name__)


class FileSystemConfig(msgspec.Struct, forbid_unknown_fields=True):
    base_path: str
    supported_formats: list[str] = msgspec.field(default_factory=lambda: ["json", "yaml", "yml", "csv", "txt"])


def atomic_write(target: Path, payload: bytes) -> None:
    """Write ``payload`` to a temporary file beside ``target`` and move it into place."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileSystemDataSource(DataSource):
    """Reads and writes structured files below a base directory.

    Operations:
    - ``read {path}``: decode by extension (JSON, YAML, CSV as a list of objects, text)
    - ``write {path, data}``: encode by extension and replace the file atomically
    - ``list {pattern}``: relative paths of files matching a glob pattern
    - ``exists {path}``: whether the file exists
    """

    source_type = "file_system"
    config_type = FileSystemConfig

    def __init__(self, name: str, config: FileSystemConfig):
        super().__init__(name)
        self.config = config
        self.base_path = Path(config.base_path).resolve()
        self.supported_formats = {fmt.lower().lstrip(".") for fmt in config.supported_formats}

    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        if operation == "read":
            return self.read(self._require(parameters, "path"))
        if operation == "write":
            if "data" not in parameters:
                raise ExecutionError(f"{self.get_name()}: write needs 'data'")
            return self.write(self._require(parameters, "path"), parameters["data"])
        if operation == "list":
            return self.list_files(parameters.get("pattern") or "*")
        if operation == "exists":
            return self._resolve(self._require(parameters, "path")).is_file()
        raise ExecutionError(f"{self.get_name()}: unsupported operation '{operation}'")

    def _require(self, parameters: dict[str, Any], key: str) -> str:
        value = parameters.get(key)
        if not isinstance(value, str) or not value:
            raise ExecutionError(f"{self.get_name()}: parameter '{key}' is required")
        return value

    def _resolve(self, path: str) -> Path:
        target = (self.base_path / path).resolve()
        if not target.is_relative_to(self.base_path):
            raise ExecutionError(f"{self.get_name()}: path traversal outside base path: {path}")
        return target

    def _format_of(self, target: Path) -> str:
        fmt = target.suffix.lower().lstrip(".")
        if fmt not in self.supported_formats:
            raise ExecutionError(f"{self.get_name()}: unsupported file format: {target.suffix or '<none>'}")
        return fmt

    def read(self, path: str) -> Any:
        target = self._resolve(path)
        fmt = self._format_of(target)
        try:
            raw = target.read_bytes()
        except FileNotFoundError:
            raise ExecutionError(f"{self.get_name()}: file not found: {path}") from None
        except OSError as e:
            raise ExecutionError(f"{self.get_name()}: cannot read {path}: {e}") from e
        try:
            if fmt == "json":
                return msgspec.json.decode(raw)
            if fmt in ("yaml", "yml"):
                return msgspec.yaml.decode(raw)
        except msgspec.DecodeError as e:
            raise ExecutionError(f"{self.get_name()}: cannot parse {path}: {e}") from e
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExecutionError(f"{self.get_name()}: cannot decode {path} as UTF-8: {e}") from e
        if fmt == "csv":
            return list(csv.DictReader(io.StringIO(text)))
        return text

    def write(self, path: str, data: Any) -> dict[str, Any]:
        target = self._resolve(path)
        fmt = self._format_of(target)
        if fmt == "json":
            payload = msgspec.json.format(msgspec.json.encode(data), indent=2)
        elif fmt in ("yaml", "yml"):
            payload = msgspec.yaml.encode(data)
        elif fmt == "csv":
            payload = self._encode_csv(data)
        else:
            payload = (data if isinstance(data, str) else msgspec.json.encode(data).decode()).encode("utf-8")
        try:
            atomic_write(target, payload)
        except OSError as e:
            raise ExecutionError(f"{self.get_name()}: cannot write {path}: {e}") from e
        logger.debug("file_written", data_source=self.get_name(), path=str(target), bytes_written=len(payload))
        return {"path": target.relative_to(self.base_path).as_posix(), "bytes_written": len(payload)}

    def _encode_csv(self, data: Any) -> bytes:
        if not isinstance(data, list) or not all(isinstance(row, dict) for row in data):
            raise ExecutionError(f"{self.get_name()}: CSV data must be an array of objects")
        fieldnames: list[str] = []
        for row in data:
            fieldnames.extend(key for key in row if key not in fieldnames)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
        writer.writeheader()
        writer.writerows(data)
        return buffer.getvalue().encode("utf-8")

    def list_files(self, pattern: str = "*") -> list[str]:
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise ExecutionError(f"{self.get_name()}: path traversal outside base path: {pattern}")
        return sorted(
            p.relative_to(self.base_path).as_posix()
            for p in self.base_path.glob(pattern)
            if p.is_file() and not p.name.endswith(".tmp")
        )

    def is_available(self) -> bool:
        return self.base_path.is_dir() and os.access(self.base_path, os.R_OK)

    def get_type(self) -> str:
        return self.source_type

    def get_connection_info(self) -> dict[str, Any]:
        return {
            "type": self.source_type,
            "name": self.get_name(),
            "base_path": str(self.base_path),
            "supported_formats": sorted(self.supported_formats),
        }
