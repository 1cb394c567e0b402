"""
Applied state and the stores it is persisted in.

Every store serializes writers through a lock record: at most one LockInfo
is held per state key, and writes are refused unless the caller holds it.
"""

import getpass
import json
import logging
import os
import socket
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from .errors import StateConflict

logger = getLogger(__name__)

STATE_VERSION = 1


class ResourceState(BaseModel, frozen=True):
    """
    Last-known state of one provisioned resource.

    Attributes:
        kind: Resource kind, e.g. "instance"
        id: Provider-assigned identifier
        attributes: Declared attributes as they were last applied
        computed: Provider-assigned attributes (public_ip, state, ...)
        depends_on: Addresses this resource references
    """

    kind: str
    id: str
    attributes: Dict[str, Any]
    computed: Dict[str, Any] = {}
    depends_on: Tuple[str, ...] = ()


class AppliedState(BaseModel, frozen=True):
    version: int = STATE_VERSION
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: Dict[str, ResourceState] = {}
    outputs: Dict[str, str] = {}

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def with_resource(self, address: str, resource: ResourceState) -> "AppliedState":
        resources = dict(self.resources)
        resources[address] = resource
        return self._bump(resources=resources)

    def without_resource(self, address: str) -> "AppliedState":
        resources = {k: v for k, v in self.resources.items() if k != address}
        return self._bump(resources=resources)

    def with_outputs(self, outputs: Dict[str, str]) -> "AppliedState":
        return self._bump(outputs=dict(outputs))

    def _bump(self, **update: Any) -> "AppliedState":
        return self.model_copy(update={**update, "serial": self.serial + 1})


def _who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class LockInfo(BaseModel, frozen=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: str
    who: str = Field(default_factory=_who)
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    path: str = ""

    def describe(self) -> str:
        return f"{self.who}, lock {self.id}, {self.operation} since {self.created.isoformat()}"


class StateStore(ABC):
    """A keyed state object plus its lock record."""

    key: str

    @abstractmethod
    def read(self) -> AppliedState:
        """Return the persisted state, or a fresh empty state if none exists."""

    @abstractmethod
    def write(self, state: AppliedState, lock: LockInfo) -> None:
        """Persist state. Raises StateConflict unless `lock` is currently held."""

    @abstractmethod
    def try_lock(self, info: LockInfo) -> None:
        """Take the lock or raise StateConflict immediately."""

    @abstractmethod
    def unlock(self, lock_id: str) -> None:
        """Release the lock with the given ID. Raises StateConflict otherwise."""

    @abstractmethod
    def lock_holder(self) -> Optional[LockInfo]:
        pass

    def acquire(self, info: LockInfo, timeout: float = 0) -> None:
        if timeout <= 0:
            self.try_lock(info)
            return
        for attempt in Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(StateConflict),
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        ):
            with attempt:
                self.try_lock(info)

    @contextmanager
    def locked(self, operation: str, timeout: float = 0) -> Iterator[LockInfo]:
        info = LockInfo(operation=operation, path=self.key)
        self.acquire(info, timeout)
        logger.debug(f"Acquired state lock {info.id} on {self.key} for {operation}")
        try:
            yield info
        except BaseException:
            try:
                self.unlock(info.id)
            except StateConflict as e:
                logger.warning(f"Could not release state lock {info.id}: {e}")
            raise
        self.unlock(info.id)
        logger.debug(f"Released state lock {info.id} on {self.key}")

    def _check_holder(self, lock: LockInfo) -> None:
        holder = self.lock_holder()
        if holder is None or holder.id != lock.id:
            raise StateConflict(
                self.key,
                holder.describe() if holder else None,
                message="state lock is not held by this writer",
            )


class InMemoryStateStore(StateStore):
    """Process-local store, safe to share between threads."""

    def __init__(self, key: str = "default"):
        self.key = key
        self._mutex = threading.Lock()
        self._document: Optional[str] = None
        self._lock: Optional[LockInfo] = None

    def read(self) -> AppliedState:
        with self._mutex:
            document = self._document
        if document is None:
            return AppliedState()
        return AppliedState.model_validate_json(document)

    def write(self, state: AppliedState, lock: LockInfo) -> None:
        with self._mutex:
            if self._lock is None or self._lock.id != lock.id:
                raise StateConflict(
                    self.key,
                    self._lock.describe() if self._lock else None,
                    message="state lock is not held by this writer",
                )
            self._document = state.model_dump_json()

    def try_lock(self, info: LockInfo) -> None:
        with self._mutex:
            if self._lock is not None:
                raise StateConflict(self.key, self._lock.describe())
            self._lock = info

    def unlock(self, lock_id: str) -> None:
        with self._mutex:
            if self._lock is None or self._lock.id != lock_id:
                raise StateConflict(self.key, message=f"no lock with ID {lock_id}")
            self._lock = None

    def lock_holder(self) -> Optional[LockInfo]:
        with self._mutex:
            return self._lock


class LocalStateStore(StateStore):
    """State kept in a JSON file, locked with an exclusively created sibling file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.key = str(self.path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def read(self) -> AppliedState:
        if not self.path.exists():
            return AppliedState()
        return AppliedState.model_validate_json(self.path.read_text(encoding="utf-8"))

    def write(self, state: AppliedState, lock: LockInfo) -> None:
        self._check_holder(lock)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def try_lock(self, info: LockInfo) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.lock_holder()
            raise StateConflict(self.key, holder.describe() if holder else None)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json())

    def unlock(self, lock_id: str) -> None:
        holder = self.lock_holder()
        if holder is None or holder.id != lock_id:
            raise StateConflict(self.key, message=f"no lock with ID {lock_id}")
        self.lock_path.unlink()

    def lock_holder(self) -> Optional[LockInfo]:
        try:
            return LockInfo.model_validate_json(self.lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None


class S3StateStore(StateStore):
    """
    State object in S3, lock record in a DynamoDB table.

    The lock table uses the same layout as Terraform's S3 backend: a string
    partition key "LockID" holding "<bucket>/<key>", and an "Info" attribute
    with the JSON-encoded LockInfo.
    """

    def __init__(
        self,
        bucket: str,
        key: str,
        region: str,
        lock_table: str,
        s3_client=None,
        dynamodb_client=None,
    ):
        self.bucket = bucket
        self.key = key
        self.region = region
        self.lock_table = lock_table
        self.s3_client = s3_client or boto3.client("s3", region_name=region)
        self.dynamodb_client = dynamodb_client or boto3.client(
            "dynamodb", region_name=region
        )

    @property
    def lock_id(self) -> str:
        return f"{self.bucket}/{self.key}"

    def read(self) -> AppliedState:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                logger.debug(f"No state at s3://{self.lock_id}, starting empty")
                return AppliedState()
            raise
        return AppliedState.model_validate(json.loads(response["Body"].read()))

    def write(self, state: AppliedState, lock: LockInfo) -> None:
        self._check_holder(lock)
        self.s3_client.put_object(
            Bucket=self.bucket,
            Key=self.key,
            Body=state.model_dump_json(indent=2).encode("utf-8"),
            ContentType="application/json",
            ServerSideEncryption="AES256",
        )
        logger.debug(f"Wrote state serial {state.serial} to s3://{self.lock_id}")

    def try_lock(self, info: LockInfo) -> None:
        try:
            self.dynamodb_client.put_item(
                TableName=self.lock_table,
                Item={
                    "LockID": {"S": self.lock_id},
                    "Info": {"S": info.model_dump_json()},
                },
                ConditionExpression="attribute_not_exists(LockID)",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
            holder = self.lock_holder()
            raise StateConflict(self.key, holder.describe() if holder else None)

    def unlock(self, lock_id: str) -> None:
        raw = self._get_lock_item()
        if raw is None or LockInfo.model_validate_json(raw).id != lock_id:
            raise StateConflict(self.key, message=f"no lock with ID {lock_id}")
        try:
            self.dynamodb_client.delete_item(
                TableName=self.lock_table,
                Key={"LockID": {"S": self.lock_id}},
                ConditionExpression="Info = :info",
                ExpressionAttributeValues={":info": {"S": raw}},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
            raise StateConflict(self.key, message=f"lock {lock_id} changed while releasing")

    def lock_holder(self) -> Optional[LockInfo]:
        raw = self._get_lock_item()
        return LockInfo.model_validate_json(raw) if raw is not None else None

    def _get_lock_item(self) -> Optional[str]:
        response = self.dynamodb_client.get_item(
            TableName=self.lock_table,
            Key={"LockID": {"S": self.lock_id}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item or "Info" not in item:
            return None
        return item["Info"]["S"]
