from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from courseauth.logging import get_logger
from courseauth.storage.errors import ConstraintViolation
from courseauth.storage.models import RoleRecord, Token, TokenType, User


class MemoryStore:
    """In-process user, role and token store used for tests and local runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, RoleRecord] = {}
        self.tokens: Dict[str, Token] = {}
        # token value -> token id
        self._token_index: Dict[str, str] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Hold the data lock and undo every write if the block raises.

        Nested calls join the outermost transaction; only it takes the
        snapshot and only it restores it.
        """
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = self._snapshot() if outermost else None
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                    self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1

    def _snapshot(self) -> Tuple[dict, ...]:
        # Stored records are replaced on save, never mutated, so shallow copies suffice
        return (
            dict(self.users),
            dict(self.roles),
            dict(self.tokens),
            dict(self._token_index),
        )

    def _restore(self, snapshot: Tuple[dict, ...]) -> None:
        live = (self.users, self.roles, self.tokens, self._token_index)
        for current, saved in zip(live, snapshot):
            current.clear()
            current.update(saved)

    # users -----------------------------------------------------------------
    @staticmethod
    def _copy_user(user: User) -> User:
        return replace(user, roles=list(user.roles))

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email_key = user.email.lower()
            if any(existing.email.lower() == email_key for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            self.users[user.id] = self._copy_user(user)
            return self._copy_user(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                return self.create_user(user)
            email_key = user.email.lower()
            for existing in self.users.values():
                if existing.id != user.id and existing.email.lower() == email_key:
                    raise ConstraintViolation("email already exists", field="email")
            self.users[user.id] = self._copy_user(user)
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email_key = email.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email.lower() == email_key), None
            )
            return self._copy_user(user) if user else None

    def lock_user(self, user_id: str) -> Optional[User]:
        # transaction() already serializes writers on the data lock
        return self.get_user(user_id)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [self._copy_user(u) for u in self.users.values()]

    # roles -----------------------------------------------------------------
    def get_role(self, name: str) -> Optional[RoleRecord]:
        with self._data_lock:
            record = self.roles.get(name.upper())
            return replace(record, permissions=list(record.permissions)) if record else None

    def save_role(self, role: RoleRecord) -> RoleRecord:
        with self._data_lock:
            self.roles[role.name.upper()] = replace(
                role, permissions=list(role.permissions)
            )
            return role

    def delete_role(self, name: str) -> bool:
        with self._data_lock:
            return self.roles.pop(name.upper(), None) is not None

    # tokens ----------------------------------------------------------------
    def save_token(self, token: Token) -> Token:
        with self._data_lock:
            holder_id = self._token_index.get(token.token)
            holder = self.tokens.get(holder_id) if holder_id else None
            if holder is not None and holder.id != token.id and holder.holds_value():
                if token.holds_value():
                    raise ConstraintViolation("token value already exists", field="token")
            else:
                # The value is free or already ours; point lookups at this record
                self._token_index[token.token] = token.id
            self.tokens[token.id] = replace(token)
            return replace(token)

    def save_tokens(self, tokens: Iterable[Token]) -> None:
        with self._data_lock:
            for token in tokens:
                self.save_token(token)

    def get_token(self, value: str) -> Optional[Token]:
        with self._data_lock:
            token_id = self._token_index.get(value)
            if token_id is None:
                return None
            return replace(self.tokens[token_id])

    def list_tokens(self, user_id: str) -> List[Token]:
        with self._data_lock:
            return [replace(t) for t in self.tokens.values() if t.user_id == user_id]

    def list_valid_tokens(
        self,
        user_id: str,
        token_types: Sequence[TokenType] = (TokenType.BEARER, TokenType.REFRESH),
        *,
        now: Optional[datetime] = None,
    ) -> List[Token]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.tokens.values()
                if t.user_id == user_id
                and t.token_type in token_types
                and t.is_valid(now)
            ]
