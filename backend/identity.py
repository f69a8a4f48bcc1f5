# backend/identity.py
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from errors import InvalidIdentity, UpstreamFailure
from models import Client, User, ROLE_ADMIN, ROLE_CLIENT

logger = logging.getLogger(__name__)


@dataclass
class ExternalIdentity:
    """A verified assertion from the OAuth provider"""

    email: Optional[str]
    name: Optional[str] = None
    picture: Optional[str] = None
    subject: Optional[str] = None


class GoogleIdentityVerifier:
    """
    Verifies Google ID tokens against Google's tokeninfo endpoint
    and returns the identity they assert.
    """

    def __init__(self, client_id: Optional[str] = None, tokeninfo_url: Optional[str] = None, timeout: float = 10.0):
        self.client_id = client_id if client_id is not None else config.GOOGLE_CLIENT_ID
        self.tokeninfo_url = tokeninfo_url or config.GOOGLE_TOKENINFO_URL
        self.timeout = timeout
        if not self.client_id:
            logger.warning("GOOGLE_CLIENT_ID not configured. Token audience will not be checked.")

    async def verify(self, credential: str) -> ExternalIdentity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": credential})
        except httpx.HTTPError as e:
            logger.error(f"Error contacting Google tokeninfo: {e}")
            raise UpstreamFailure("Identity provider unavailable")

        if response.status_code == 400:
            raise InvalidIdentity("Invalid Google credential")
        if response.status_code != 200:
            logger.error(f"Google tokeninfo returned HTTP {response.status_code}")
            raise UpstreamFailure("Identity provider error")

        payload = response.json()
        if self.client_id and payload.get("aud") != self.client_id:
            logger.warning(f"Rejected Google token for audience {payload.get('aud')}")
            raise InvalidIdentity("Credential was issued for another application")

        return ExternalIdentity(
            email=payload.get("email"),
            name=payload.get("name"),
            picture=payload.get("picture"),
            subject=payload.get("sub"),
        )


def get_identity_verifier() -> GoogleIdentityVerifier:
    return GoogleIdentityVerifier()


def ensure_client_profile(db: Session, user: User) -> Client:
    """Fetch the user's client profile, creating it on first use"""
    client = db.query(Client).filter(Client.user_id == user.id).first()
    if client:
        return client

    client = Client(user_id=user.id, preferences={})
    db.add(client)
    try:
        db.flush()
    except IntegrityError:
        # Created by a concurrent request
        db.rollback()
        client = db.query(Client).filter(Client.user_id == user.id).one()
    else:
        logger.info(f"Created client profile {client.id} for user {user.id}")
    return client


def resolve_or_create_user(db: Session, identity: ExternalIdentity) -> User:
    """
    Map an external identity to a User, creating the user (role client)
    and its client profile the first time the email is seen. Emails listed
    in ADMIN_EMAILS are promoted to admin.
    """
    email = (identity.email or "").strip().lower()
    if not email:
        raise InvalidIdentity("Identity assertion has no email")

    user = db.query(User).filter(User.email == email).first()
    if not user:
        user = User(
            email=email,
            name=identity.name or email.split("@")[0],
            avatar=identity.picture,
            google_id=identity.subject,
            role=ROLE_CLIENT,
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            user = db.query(User).filter(User.email == email).one()
        else:
            db.refresh(user)
            logger.info(f"Created user {user.id} for {email}")
    elif identity.subject and not user.google_id:
        user.google_id = identity.subject
        db.commit()

    if email in config.ADMIN_EMAILS and user.role != ROLE_ADMIN:
        user.role = ROLE_ADMIN
        db.commit()
        logger.info(f"Promoted user {user.id} to admin from ADMIN_EMAILS")

    if user.role == ROLE_CLIENT:
        ensure_client_profile(db, user)
        db.commit()

    return user
