"""In-memory storage for users, files and execution logs.

Nothing here is persisted; records live for the lifetime of the process.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from itertools import count
from typing import Dict, List, Optional, Union

from schema import (
    ExecutionLog,
    File,
    InsertExecutionLog,
    InsertFile,
    InsertUser,
    User,
)


class Storage(ABC):
    """Interface implemented by storage backends"""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_firebase_uid(self, firebase_uid: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, user: InsertUser) -> User: ...

    @abstractmethod
    def get_file(self, file_id: int) -> Optional[File]: ...

    @abstractmethod
    def get_files_by_user_id(self, user_id: int) -> List[File]: ...

    @abstractmethod
    def create_file(self, file: InsertFile) -> File: ...

    @abstractmethod
    def update_file(self, file_id: int, **updates) -> Optional[File]: ...

    @abstractmethod
    def delete_file(self, file_id: int) -> bool: ...

    @abstractmethod
    def create_execution_log(self, log: InsertExecutionLog) -> ExecutionLog: ...

    @abstractmethod
    def get_execution_logs_by_user_id(self, user_id: Union[int, str]) -> List[ExecutionLog]: ...


class MemStorage(Storage):
    def __init__(self):
        self.users: Dict[int, User] = {}
        self.files: Dict[int, File] = {}
        self.execution_logs: Dict[int, ExecutionLog] = {}
        self._user_ids = count(1)
        self._file_ids = count(1)
        self._log_ids = count(1)
        self._lock = threading.Lock()

    # User methods
    def get_user(self, user_id):
        return self.users.get(user_id)

    def get_user_by_username(self, username):
        return next((u for u in list(self.users.values()) if u.username == username), None)

    def get_user_by_firebase_uid(self, firebase_uid):
        return next((u for u in list(self.users.values()) if u.firebase_uid == firebase_uid), None)

    def create_user(self, user):
        with self._lock:
            user_id = next(self._user_ids)
            record = User(id=user_id, created_at=datetime.now(), **user.model_dump())
            self.users[user_id] = record
        return record

    # File methods
    def get_file(self, file_id):
        return self.files.get(file_id)

    def get_files_by_user_id(self, user_id):
        return [f for f in list(self.files.values()) if f.user_id == user_id]

    def create_file(self, file):
        now = datetime.now()
        with self._lock:
            file_id = next(self._file_ids)
            record = File(id=file_id, created_at=now, updated_at=now, **file.model_dump())
            self.files[file_id] = record
        return record

    def update_file(self, file_id, **updates):
        """Apply ``updates`` to a file; owner, id and creation time are fixed"""
        for key in ('id', 'user_id', 'created_at', 'updated_at'):
            updates.pop(key, None)

        with self._lock:
            current = self.files.get(file_id)
            if current is None:
                return None
            data = current.model_dump()
            data.update(updates)
            data['updated_at'] = datetime.now()
            # Re-validate so a bad ``type`` is rejected
            record = File(**data)
            self.files[file_id] = record
        return record

    def delete_file(self, file_id):
        with self._lock:
            return self.files.pop(file_id, None) is not None

    # Execution log methods
    def create_execution_log(self, log):
        with self._lock:
            log_id = next(self._log_ids)
            record = ExecutionLog(id=log_id, executed_at=datetime.now(), **log.model_dump())
            self.execution_logs[log_id] = record
        return record

    def get_execution_logs_by_user_id(self, user_id):
        return [log for log in list(self.execution_logs.values()) if log.user_id == user_id]


storage = MemStorage()
