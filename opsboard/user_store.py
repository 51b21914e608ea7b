import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from opsboard.schemas import UserRecord

logger = logging.getLogger("opsboard.user_store")

UserListener = Callable[[UserRecord], None]


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class PersistenceError(Exception):
    """Transient document store failure; safe to retry."""


class VersionConflictError(Exception):
    """The stored document changed between read and conditional write."""


class UserStore(ABC):
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    @abstractmethod
    def create_user(self, user: UserRecord) -> UserRecord:
        """Insert a new document; raises ``VersionConflictError`` if the user already exists."""
        raise NotImplementedError

    @abstractmethod
    def update_user(self, user: UserRecord, expected_version: int) -> UserRecord:
        """Replace the document only if its stored version still equals ``expected_version``."""
        raise NotImplementedError

    @abstractmethod
    def find_user_by_provider_customer_id(self, provider_customer_id: str) -> Optional[UserRecord]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.listeners: List[UserListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: UserListener):
        self.listeners.append(listener)

    def _notify(self, user: UserRecord):
        for listener in list(self.listeners):
            try:
                listener(user)
            except Exception:
                logger.exception("User store listener failed for user %s", user.user_id)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def create_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            if user.user_id in self.users:
                raise VersionConflictError(f"User {user.user_id} already exists")
            self.users[user.user_id] = user.model_copy(deep=True)
        self._notify(user)
        return user

    def update_user(self, user: UserRecord, expected_version: int) -> UserRecord:
        with self._lock:
            current = self.users.get(user.user_id)
            if current is None:
                raise VersionConflictError(f"User {user.user_id} no longer exists")
            if current.version != expected_version:
                raise VersionConflictError(
                    f"User {user.user_id} is at version {current.version}, expected {expected_version}"
                )
            self.users[user.user_id] = user.model_copy(deep=True)
        self._notify(user)
        return user

    def find_user_by_provider_customer_id(self, provider_customer_id: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                billing_customer = user.billing.provider_customer_id if user.billing else None
                if provider_customer_id in (user.provider_customer_id, billing_customer):
                    return user.model_copy(deep=True)
        return None


class DynamoUserStore(UserStore):
    def __init__(self, table_name: str):
        self._table = boto3.resource("dynamodb").Table(table_name)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            item = self._table.get_item(Key={"user_id": user_id}, ConsistentRead=True).get("Item")
        except (ClientError, BotoCoreError) as exc:
            raise PersistenceError(f"Failed to read user {user_id}: {exc}") from exc
        if not item:
            return None
        return UserRecord.model_validate(item)

    def create_user(self, user: UserRecord) -> UserRecord:
        try:
            self._table.put_item(
                Item=user.model_dump(mode="json"),
                ConditionExpression="attribute_not_exists(user_id)",
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(f"User {user.user_id} already exists") from exc
            raise PersistenceError(f"Failed to create user {user.user_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise PersistenceError(f"Failed to create user {user.user_id}: {exc}") from exc
        return user

    def update_user(self, user: UserRecord, expected_version: int) -> UserRecord:
        if expected_version == 0:
            # Documents written before versioning carry no version attribute.
            condition = "attribute_exists(user_id) AND (attribute_not_exists(version) OR version = :expected)"
        else:
            condition = "attribute_exists(user_id) AND version = :expected"
        try:
            self._table.put_item(
                Item=user.model_dump(mode="json"),
                ConditionExpression=condition,
                ExpressionAttributeValues={":expected": expected_version},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(
                    f"User {user.user_id} changed since version {expected_version}"
                ) from exc
            raise PersistenceError(f"Failed to update user {user.user_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise PersistenceError(f"Failed to update user {user.user_id}: {exc}") from exc
        return user

    def find_user_by_provider_customer_id(self, provider_customer_id: str) -> Optional[UserRecord]:
        scan_kwargs = {
            "FilterExpression": Attr("provider_customer_id").eq(provider_customer_id)
            | Attr("billing.provider_customer_id").eq(provider_customer_id),
        }
        try:
            response = self._table.scan(**scan_kwargs)
            while True:
                items = response.get("Items", [])
                if items:
                    return UserRecord.model_validate(items[0])
                if "LastEvaluatedKey" not in response:
                    return None
                response = self._table.scan(ExclusiveStartKey=response["LastEvaluatedKey"], **scan_kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise PersistenceError(f"Failed to look up customer {provider_customer_id}: {exc}") from exc


_IN_MEMORY_USER_STORE = InMemoryUserStore()


def reset_in_memory_user_store():
    _IN_MEMORY_USER_STORE.users.clear()
    _IN_MEMORY_USER_STORE.listeners.clear()


def get_in_memory_user_store() -> InMemoryUserStore:
    return _IN_MEMORY_USER_STORE


def get_user_store() -> UserStore:
    force_memory = _as_bool(os.environ.get("USE_IN_MEMORY_USER_STORE"), default=False)
    if force_memory:
        return _IN_MEMORY_USER_STORE

    table_name = (os.environ.get("USERS_TABLE") or "").strip()
    if not table_name:
        return _IN_MEMORY_USER_STORE

    try:
        return DynamoUserStore(table_name=table_name)
    except Exception:
        logger.exception("Falling back to in-memory user store; DynamoDB table %s unavailable", table_name)
        return _IN_MEMORY_USER_STORE
