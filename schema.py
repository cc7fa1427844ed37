"""Record types for the in-memory storage stub.

``Insert*`` models validate the payload a caller hands to storage; the plain
models are the stored rows, with ids and timestamps filled in by storage.
"""
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel


FileType = Literal['file', 'folder']


class InsertUser(BaseModel):
    username: str
    password: str
    firebase_uid: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class User(InsertUser):
    id: int
    created_at: datetime


class InsertFile(BaseModel):
    user_id: int
    name: str
    type: FileType
    content: Optional[str] = None
    path: str = '/'


class File(InsertFile):
    id: int
    created_at: datetime
    updated_at: datetime


class InsertExecutionLog(BaseModel):
    # Firebase uid on the execute path, integer id for stub users
    user_id: Union[int, str]
    code: str
    file_id: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None


class ExecutionLog(InsertExecutionLog):
    id: int
    executed_at: datetime
