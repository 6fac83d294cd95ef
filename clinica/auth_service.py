from __future__ import annotations

from sqlalchemy import select

from clinica.auth_security import hash_password, password_needs_rehash, verify_password
from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import Organization, User


def create_user(
    organization_id: int,
    name: str,
    username: str,
    password: str,
    email: str | None = None,
    user_type: int = 1,
    color: str | None = None,
) -> str:
    """Crea un utente (professionista se user_type == 1) con password bcrypt."""
    username = username.strip().lower()
    if not username or not password:
        raise ValidationError("Username e password sono obbligatori.", field="username")
    if not name.strip():
        raise ValidationError("Il nome è obbligatorio.", field="name")

    with db_session() as s:
        if s.get(Organization, organization_id) is None:
            raise NotFoundError("Organizzazione non trovata.")

        exists = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if exists:
            raise ValidationError("Username già registrato.", field="username")

        u = User(
            organization_id=organization_id,
            name=name.strip(),
            email=email,
            username=username,
            password_hash=hash_password(password),
            type=user_type,
            color=color,
            is_active=True,
        )
        s.add(u)
        s.flush()
        return u.id


def authenticate(username: str, password: str) -> User | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        if password_needs_rehash(u.password_hash):
            u.password_hash = hash_password(password)
        return u


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)
