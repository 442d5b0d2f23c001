"""Storage - Abstraction for governance persistence.

This module provides the storage collaborator the ledger and the stores
are built on: a small key-value surface plus append-only numbered logs.

Design principles:
- One stable method signature across every backend
- Appends are conditional on the caller's view of the log tail
  (``expected_last_id``), so two writers can never chain off the same entry
- Backend failures surface as StorageError, never as "no data"
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import fcntl
import json
import logging
import os
import re
import tempfile
import threading

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from aif_governance.common.exceptions import LogConflictError, StorageError

logger = logging.getLogger(__name__)

LogEntry = Tuple[int, bytes]

_SEGMENT = re.compile(r"^[A-Za-z0-9_.:\-]+$")


def _check_key(key: str) -> None:
    parts = key.split("/")
    for part in parts:
        if part in ("", ".", "..") or not _SEGMENT.match(part):
            raise StorageError(f"Invalid storage key: {key!r}", details={"key": key})


def _check_stream(stream: str) -> None:
    if not stream or not _SEGMENT.match(stream) or stream in (".", ".."):
        raise StorageError(f"Invalid log stream: {stream!r}", details={"stream": stream})


class Storage(ABC):
    """Abstract storage backend.

    Keys are ``/``-separated paths. Log ids start at 1 and increase by one
    per append; ``last_log_id`` is 0 for an empty stream.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Read a value, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Write a value, replacing any previous one."""

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Keys under a prefix, sorted."""

    @abstractmethod
    def append_to_log(
        self,
        stream: str,
        data: bytes,
        expected_last_id: Optional[int] = None,
    ) -> int:
        """Append an entry and return its id.

        Args:
            stream: Log name
            data: Opaque entry bytes
            expected_last_id: If given, the append only succeeds when the
                current tail id equals it.

        Raises:
            LogConflictError: if the tail moved
            StorageError: on backend failure
        """

    @abstractmethod
    def range_log(
        self,
        stream: str,
        from_id: int = 1,
        count: Optional[int] = None,
    ) -> List[LogEntry]:
        """Entries with id >= from_id in ascending order."""

    @abstractmethod
    def last_log_id(self, stream: str) -> int:
        """Id of the newest entry, 0 if the log is empty."""

    def health_check(self) -> bool:
        return True


class InMemoryStorage(Storage):
    """Process-local storage, used for tests and the default dev setup."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        self._logs: Dict[str, List[bytes]] = {}

    def get(self, key: str) -> Optional[str]:
        _check_key(key)
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        _check_key(key)
        with self._lock:
            self._values[key] = value

    def list(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._values if k.startswith(prefix))

    def append_to_log(self, stream: str, data: bytes, expected_last_id: Optional[int] = None) -> int:
        _check_stream(stream)
        with self._lock:
            log = self._logs.setdefault(stream, [])
            if expected_last_id is not None and expected_last_id != len(log):
                raise LogConflictError(stream, expected_last_id, len(log))
            log.append(bytes(data))
            return len(log)

    def range_log(self, stream: str, from_id: int = 1, count: Optional[int] = None) -> List[LogEntry]:
        with self._lock:
            log = self._logs.get(stream, [])
            start = max(from_id, 1)
            end = len(log) if count is None else min(len(log), start - 1 + count)
            return [(i, log[i - 1]) for i in range(start, end + 1)]

    def last_log_id(self, stream: str) -> int:
        with self._lock:
            return len(self._logs.get(stream, []))


class FileStorage(Storage):
    """File-backed storage.

    Layout under ``root``:

    - ``kv/<key>.json`` one file per key, replaced atomically
    - ``logs/<stream>.jsonl`` one ``{"id", "data"}`` object per line,
      appended under an exclusive ``fcntl`` lock so several processes can
      share a directory
    """

    def __init__(self, root: str, fsync_on_write: bool = False):
        self.root = Path(root)
        self.fsync_on_write = fsync_on_write
        self._kv_dir = self.root / "kv"
        self._log_dir = self.root / "logs"

        # Thread safety
        self._lock = threading.Lock()
        # stream -> (file size, last id) seen at our last append or scan
        self._tail_cache: Dict[str, Tuple[int, int]] = {}

        try:
            self._kv_dir.mkdir(parents=True, exist_ok=True)
            self._log_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as e:
            raise StorageError(f"Cannot initialize storage at {self.root}: {e}") from e

    def _key_path(self, key: str) -> Path:
        _check_key(key)
        return self._kv_dir / f"{key}.json"

    def _log_path(self, stream: str) -> Path:
        _check_stream(stream)
        return self._log_dir / f"{stream}.jsonl"

    def get(self, key: str) -> Optional[str]:
        path = self._key_path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)["value"]
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to read {key}: {e}", details={"key": key}) from e

    def set(self, key: str, value: str) -> None:
        path = self._key_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump({"value": value}, f)
                    if self.fsync_on_write:
                        f.flush()
                        os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}", details={"key": key}) from e

    def list(self, prefix: str) -> List[str]:
        keys = []
        for path in self._kv_dir.rglob("*.json"):
            key = path.relative_to(self._kv_dir).as_posix()[: -len(".json")]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _scan_last_id(self, path: Path) -> int:
        last_id = 0
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    last_id = json.loads(line)["id"]
        return last_id

    def append_to_log(self, stream: str, data: bytes, expected_last_id: Optional[int] = None) -> int:
        path = self._log_path(stream)
        with self._lock:
            try:
                fd = os.open(str(path), os.O_RDWR | os.O_CREAT | os.O_APPEND, 0o600)
            except OSError as e:
                raise StorageError(f"Cannot open log {stream}: {e}", details={"stream": stream}) from e
            try:
                # Acquire exclusive lock
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    size = os.fstat(fd).st_size
                    cached = self._tail_cache.get(stream)
                    if cached is not None and cached[0] == size:
                        last_id = cached[1]
                    else:
                        last_id = self._scan_last_id(path)

                    if expected_last_id is not None and expected_last_id != last_id:
                        self._tail_cache[stream] = (size, last_id)
                        raise LogConflictError(stream, expected_last_id, last_id)

                    new_id = last_id + 1
                    line = json.dumps({"id": new_id, "data": data.decode("utf-8")}) + "\n"
                    encoded = line.encode("utf-8")
                    os.write(fd, encoded)
                    if self.fsync_on_write:
                        os.fsync(fd)
                    self._tail_cache[stream] = (size + len(encoded), new_id)
                    return new_id
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            except (OSError, ValueError, KeyError) as e:
                raise StorageError(f"Append to {stream} failed: {e}", details={"stream": stream}) from e
            finally:
                os.close(fd)

    def range_log(self, stream: str, from_id: int = 1, count: Optional[int] = None) -> List[LogEntry]:
        path = self._log_path(stream)
        if not path.exists():
            return []
        entries: List[LogEntry] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    record = json.loads(line)
                    if record["id"] < from_id:
                        continue
                    entries.append((record["id"], record["data"].encode("utf-8")))
                    if count is not None and len(entries) >= count:
                        break
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to read log {stream}: {e}", details={"stream": stream}) from e
        return entries

    def last_log_id(self, stream: str) -> int:
        path = self._log_path(stream)
        if not path.exists():
            return 0
        try:
            return self._scan_last_id(path)
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to read log {stream}: {e}", details={"stream": stream}) from e

    def health_check(self) -> bool:
        return os.access(self.root, os.W_OK)


class DynamoDBStorage(Storage):
    """DynamoDB-backed storage on a single table keyed by ``pk``/``sk``.

    Values live at ``pk=KV#<key>, sk=KV``. Log entries live at
    ``pk=LOG#<stream>, sk=SEQ#<zero-padded id>`` and are written with
    ``attribute_not_exists(pk)`` so a second writer for the same id fails.
    """

    DEFAULT_REGION = "us-east-1"
    SEQ_WIDTH = 12

    def __init__(
        self,
        table_name: Optional[str] = None,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
    ):
        self.table_name = table_name or os.environ.get("AIF_DYNAMODB_TABLE")
        if not self.table_name:
            raise StorageError("AIF_DYNAMODB_TABLE required")

        self.region = region or os.environ.get("AWS_DEFAULT_REGION", self.DEFAULT_REGION)

        if aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            self.dynamodb = session.resource("dynamodb", region_name=self.region)
        else:
            self.dynamodb = boto3.resource("dynamodb", region_name=self.region)

        self.table = self.dynamodb.Table(self.table_name)
        logger.info(f"DynamoDB storage initialized: {self.table_name} ({self.region})")

    def _seq(self, log_id: int) -> str:
        return f"SEQ#{log_id:0{self.SEQ_WIDTH}d}"

    def get(self, key: str) -> Optional[str]:
        _check_key(key)
        try:
            resp = self.table.get_item(Key={"pk": f"KV#{key}", "sk": "KV"}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"get failed ({key}): {e}")
            raise StorageError(f"DynamoDB get failed: {e}", details={"key": key}) from e
        if item := resp.get("Item"):
            return item["value"]
        return None

    def set(self, key: str, value: str) -> None:
        _check_key(key)
        try:
            self.table.put_item(Item={"pk": f"KV#{key}", "sk": "KV", "value": value})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"set failed ({key}): {e}")
            raise StorageError(f"DynamoDB put failed: {e}", details={"key": key}) from e

    def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        kwargs = {
            "FilterExpression": "begins_with(pk, :prefix) AND sk = :kv",
            "ExpressionAttributeValues": {":prefix": f"KV#{prefix}", ":kv": "KV"},
            "ProjectionExpression": "pk",
        }
        try:
            while True:
                resp = self.table.scan(**kwargs)
                keys.extend(item["pk"][len("KV#"):] for item in resp.get("Items", []))
                if "LastEvaluatedKey" not in resp:
                    break
                kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        except (ClientError, BotoCoreError) as e:
            logger.error(f"list failed ({prefix}): {e}")
            raise StorageError(f"DynamoDB scan failed: {e}", details={"prefix": prefix}) from e
        return sorted(keys)

    def last_log_id(self, stream: str) -> int:
        _check_stream(stream)
        try:
            resp = self.table.query(
                KeyConditionExpression=Key("pk").eq(f"LOG#{stream}"),
                ScanIndexForward=False,
                Limit=1,
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"last_log_id failed ({stream}): {e}")
            raise StorageError(f"DynamoDB query failed: {e}", details={"stream": stream}) from e
        items = resp.get("Items", [])
        return int(items[0]["log_id"]) if items else 0

    def append_to_log(self, stream: str, data: bytes, expected_last_id: Optional[int] = None) -> int:
        last_id = self.last_log_id(stream)
        if expected_last_id is not None and expected_last_id != last_id:
            raise LogConflictError(stream, expected_last_id, last_id)

        new_id = last_id + 1
        item = {
            "pk": f"LOG#{stream}",
            "sk": self._seq(new_id),
            "log_id": new_id,
            "data": data.decode("utf-8"),
        }
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise LogConflictError(stream, last_id, new_id) from e
            logger.error(f"append failed ({stream}): {e}")
            raise StorageError(f"DynamoDB append failed: {e}", details={"stream": stream}) from e
        except BotoCoreError as e:
            logger.error(f"append failed ({stream}): {e}")
            raise StorageError(f"DynamoDB append failed: {e}", details={"stream": stream}) from e
        return new_id

    def range_log(self, stream: str, from_id: int = 1, count: Optional[int] = None) -> List[LogEntry]:
        _check_stream(stream)
        entries: List[LogEntry] = []
        kwargs = {
            "KeyConditionExpression": Key("pk").eq(f"LOG#{stream}") & Key("sk").gte(self._seq(max(from_id, 1))),
            "ScanIndexForward": True,
            "ConsistentRead": True,
        }
        try:
            while True:
                if count is not None:
                    kwargs["Limit"] = count - len(entries)
                resp = self.table.query(**kwargs)
                for item in resp.get("Items", []):
                    entries.append((int(item["log_id"]), item["data"].encode("utf-8")))
                if "LastEvaluatedKey" not in resp or (count is not None and len(entries) >= count):
                    break
                kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        except (ClientError, BotoCoreError) as e:
            logger.error(f"range_log failed ({stream}): {e}")
            raise StorageError(f"DynamoDB query failed: {e}", details={"stream": stream}) from e
        return entries

    def health_check(self) -> bool:
        try:
            self.table.load()
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"DynamoDB health check failed: {e}")
            return False
