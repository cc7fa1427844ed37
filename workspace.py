"""Workspace document tree.

The IDE keeps its user-facing data in a tree of JSON-like nodes::

    users/{uid}                         profile (userId, email, name, createdAt)
    users/{uid}/files/{fileId}          file owned by uid
    users/{uid}/sharedFiles/{fileId}    pointer to a file another user shared
    collaborations/{fileId}/users/{uid} collaborator record
    collaborations/{fileId}/history/... edit history of shared files

Exactly one ``users/*/files`` node holds a given file; that user is its owner.
"""
import copy
import logging
import secrets
import threading
import time

logger = logging.getLogger(__name__)


def now_ms():
    return int(time.time() * 1000)


class WorkspaceError(Exception):
    """Invalid workspace request"""


class ShareError(WorkspaceError):
    """A file could not be shared with the requested user"""


def _split(path):
    return [part for part in path.strip('/').split('/') if part]


# Characters that cannot appear in a single tree key
INVALID_KEY_CHARS = frozenset('/.#$[]')


def check_key(key, label='key'):
    """Return ``key`` if it names exactly one tree node, else raise"""
    if not isinstance(key, str) or not key:
        raise WorkspaceError(f'{label} is required')
    if any(c in INVALID_KEY_CHARS or ord(c) < 32 for c in key):
        raise WorkspaceError(f'Invalid {label}: {key!r}')
    return key


def check_text(value, label):
    if not isinstance(value, str):
        raise WorkspaceError(f'{label} must be a string')
    return value


class DocumentTree:
    """Nested dicts addressed by slash-separated paths"""

    def __init__(self, data=None):
        self._root = data or {}
        self._lock = threading.RLock()

    def _node(self, parts):
        node = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def get(self, path):
        with self._lock:
            return copy.deepcopy(self._node(_split(path)))

    def exists(self, path):
        return self.get(path) is not None

    def children(self, path):
        node = self.get(path)
        return node if isinstance(node, dict) else {}

    def set(self, path, value):
        """Replace the node at ``path``; ``None`` removes it"""
        parts = _split(path)
        if not parts:
            raise WorkspaceError('Cannot replace the tree root')

        with self._lock:
            if value is None:
                self._delete(parts)
                return
            node = self._root
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = node[part] = {}
                node = child
            node[parts[-1]] = copy.deepcopy(value)

    def update(self, path, values):
        with self._lock:
            for key, value in values.items():
                self.set(f'{path}/{key}', value)

    def push(self, path, value):
        """Store ``value`` as a new child of ``path`` and return its key"""
        # Millisecond prefix keeps keys in creation order
        key = f'{now_ms():013d}{secrets.token_hex(4)}'
        with self._lock:
            while self.exists(f'{path}/{key}'):
                key = f'{now_ms():013d}{secrets.token_hex(4)}'
            self.set(f'{path}/{key}', value)
        return key

    def _delete(self, parts):
        trail = []
        node = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)

        # Prune parents left empty
        for parent, key in reversed(trail):
            if parent[key]:
                break
            del parent[key]


class Workspace:
    def __init__(self, tree=None):
        self.tree = tree if tree is not None else DocumentTree()

    # Users
    def ensure_user(self, user_id, email, name=''):
        """Store a user profile unless one already exists"""
        if not user_id or not email:
            raise WorkspaceError('userId and email are required')
        check_key(user_id, 'userId')
        check_text(email, 'email')
        check_text(name or '', 'name')

        profile_path = f'users/{user_id}'
        existing = self.tree.get(profile_path)
        if existing and existing.get('email'):
            logger.debug('User already exists in database: %s', user_id)
            return self._profile(existing)

        profile = {
            'userId': user_id,
            'email': email.lower(),
            'name': name or '',
            'createdAt': now_ms(),
        }
        self.tree.update(profile_path, profile)
        logger.info('Stored user profile %s', user_id)
        return profile

    @staticmethod
    def _profile(node):
        return {k: v for k, v in node.items() if k not in ('files', 'sharedFiles')}

    def get_user_by_email(self, email):
        if not email or not isinstance(email, str):
            return None
        email = email.lower()
        for user_id, node in self.tree.children('users').items():
            if isinstance(node, dict) and (node.get('email') or '').lower() == email:
                return dict(self._profile(node), userId=user_id)
        return None

    def get_user_email(self, user_id):
        check_key(user_id, 'userId')
        node = self.tree.get(f'users/{user_id}')
        if isinstance(node, dict):
            return node.get('email')
        return None

    def list_users(self, exclude=None):
        return [
            {'email': node['email'], 'userId': user_id}
            for user_id, node in self.tree.children('users').items()
            if isinstance(node, dict) and node.get('email') and user_id != exclude
        ]

    # Files
    def create_file(self, user_id, name, content='', path='/', type='file'):
        check_key(user_id, 'userId')
        check_text(name, 'File name')
        check_text(content or '', 'content')
        check_text(path or '/', 'path')
        if not name or not name.strip():
            raise WorkspaceError('File name is required')
        if type not in ('file', 'folder'):
            raise WorkspaceError(f'Invalid file type: {type}')

        timestamp = now_ms()
        record = {
            'name': name.strip(),
            'content': content or '',
            'path': path or '/',
            'type': type,
            'lastModified': timestamp,
            'createdAt': timestamp,
            'ownerUserId': user_id,
        }
        file_id = self.tree.push(f'users/{user_id}/files', record)
        return dict(record, id=file_id)

    def get_file(self, user_id, file_id):
        check_key(user_id, 'userId')
        check_key(file_id, 'fileId')
        data = self.tree.get(f'users/{user_id}/files/{file_id}')
        if data is None:
            return None
        return dict(data, id=file_id)

    def delete_file(self, user_id, file_id):
        check_key(user_id, 'userId')
        check_key(file_id, 'fileId')
        path = f'users/{user_id}/files/{file_id}'
        if not self.tree.exists(path):
            return False
        self.tree.set(path, None)
        return True

    def list_files(self, user_id):
        """Own files followed by files other users shared with ``user_id``"""
        check_key(user_id, 'userId')
        files = [
            dict(data, id=file_id, ownerUserId=user_id)
            for file_id, data in self.tree.children(f'users/{user_id}/files').items()
        ]

        for file_id, pointer in self.tree.children(f'users/{user_id}/sharedFiles').items():
            owner_id = pointer.get('ownerId') if isinstance(pointer, dict) else None
            if not owner_id:
                continue
            data = self.tree.get(f'users/{owner_id}/files/{file_id}')
            if data is None:
                # Owner deleted the file
                continue
            files.append(dict(data, id=file_id, isShared=True, ownerUserId=owner_id))

        return files

    def update_file_content(self, user_id, file_id, content, owner_id=None):
        """Write new content to the owner's copy of a file.

        Returns the updated record, or ``None`` when the file does not exist.
        """
        check_key(user_id, 'userId')
        check_key(file_id, 'fileId')
        if owner_id:
            check_key(owner_id, 'ownerId')
        check_text(content, 'content')
        actual_owner = owner_id or user_id
        path = f'users/{actual_owner}/files/{file_id}'
        data = self.tree.get(path)
        if data is None:
            return None

        data.update(content=content, lastModified=now_ms())
        self.tree.set(path, data)

        if owner_id and owner_id != user_id:
            self.tree.push(f'collaborations/{file_id}/history', {
                'userId': user_id,
                'timestamp': now_ms(),
                'action': 'edit',
            })
        return dict(data, id=file_id)

    # Collaboration
    def list_collaborators(self, file_id):
        check_key(file_id, 'fileId')
        return [
            record.get('email')
            for record in self.tree.children(f'collaborations/{file_id}/users').values()
        ]

    def file_history(self, file_id):
        check_key(file_id, 'fileId')
        return list(self.tree.children(f'collaborations/{file_id}/history').values())

    def share_file(self, file_id, owner_id, target_email, shared_by):
        """Grant the user registered under ``target_email`` access to a file.

        ``shared_by`` is the uid of the user doing the sharing.
        """
        check_key(file_id, 'fileId')
        if target_email is not None and not isinstance(target_email, str):
            raise ShareError('Email must be a string')
        email = (target_email or '').strip().lower()
        if not email:
            raise ShareError('Please enter an email address')
        if not shared_by:
            raise ShareError('You must be logged in to share files')
        check_key(shared_by, 'userId')
        if owner_id:
            check_key(owner_id, 'ownerId')

        sharer_email = self.get_user_email(shared_by)
        if sharer_email and email == sharer_email.lower():
            raise ShareError('You cannot share with yourself')
        if email in [(c or '').lower() for c in self.list_collaborators(file_id)]:
            raise ShareError('This user is already a collaborator')

        target = self.get_user_by_email(email)
        if not target:
            raise ShareError('User with this email not found. Please verify the email address.')
        target_id = target['userId']
        if target_id == shared_by:
            raise ShareError('You cannot share with yourself')

        owner_id = owner_id or shared_by
        if not self.tree.exists(f'users/{owner_id}/files/{file_id}'):
            raise ShareError('File not found')

        timestamp = now_ms()
        record = {
            'email': email,
            'userId': target_id,
            'addedAt': timestamp,
            'addedBy': sharer_email,
        }
        self.tree.set(f'collaborations/{file_id}/users/{target_id}', record)
        self.tree.set(f'users/{target_id}/sharedFiles/{file_id}', {
            'fileId': file_id,
            'sharedBy': sharer_email,
            'sharedAt': timestamp,
            'ownerId': owner_id,
        })
        logger.info('Shared file %s of %s with %s', file_id, owner_id, target_id)
        return record
