"""
Account lookup for sign-in.

One person may hold several Kleanr accounts (say, a homeowner account and
a cleaner account) under the same email address.  Sign-in by email then
has to ask which one they mean; sign-in by username never does.
"""

import logging

from sqlalchemy import func

from models import User
from services.errors import ServiceError

logger = logging.getLogger(__name__)

# user.type -> (accountType, displayName)
_ACCOUNT_TYPES = {
    "employee": ("employee", "Business Employee"),
    "cleaner": ("cleaner", "Cleaner"),
    "owner": ("owner", "Owner"),
    "humanResources": ("hr", "HR Staff"),
    "homeowner": ("homeowner", "Homeowner"),
}


class InvalidCredentials(ServiceError):
    status_code = 401
    default_message = "Invalid username/email or password"


def account_type_of(user):
    """Return ``(account_type, display_name)`` for a user."""
    if user.type == "cleaner" and user.is_marketplace_cleaner:
        return "marketplace_cleaner", "Marketplace Cleaner"
    return _ACCOUNT_TYPES.get(user.type or "homeowner", ("homeowner", "Homeowner"))


def find_accounts_by_email(email):
    email = (email or "").strip().lower()
    if not email:
        return []
    return (
        User.query
        .filter(func.lower(User.email) == email)
        .order_by(User.created_at.asc())
        .all()
    )


def account_options(users):
    options = []
    for user in users:
        account_type, display_name = account_type_of(user)
        options.append({
            "accountType": account_type,
            "displayName": display_name,
            "userId": user.id,
            "firstName": user.first_name,
        })
    return options


def linked_accounts(user):
    """Other accounts sharing this user's email."""
    if not user.email:
        return []
    return account_options([u for u in find_accounts_by_email(user.email) if u.id != user.id])


def resolve_login(identifier, password, account_type=None):
    """Work out which account a sign-in attempt is for and check the password.

    Returns ``{"user": User}`` on success, or
    ``{"requires_account_selection": True, "account_options": [...]}`` when
    an email matches several accounts and no ``account_type`` was given.
    Raises ``InvalidCredentials`` on a bad identifier or password.
    """
    identifier = (identifier or "").strip()
    if not identifier or not password:
        raise ServiceError("Username/email and password are required")

    if "@" in identifier:
        candidates = find_accounts_by_email(identifier)
        if len(candidates) > 1:
            if not account_type:
                return {
                    "requires_account_selection": True,
                    "account_options": account_options(candidates),
                }
            matching = [u for u in candidates if account_type_of(u)[0] == account_type]
            if not matching:
                raise ServiceError("No {} account found for this email".format(account_type))
            user = matching[0]
        else:
            user = candidates[0] if candidates else None
    else:
        user = User.query.filter(func.lower(User.username) == identifier.lower()).first()

    if not user or not user.check_password(password):
        logger.info("Failed sign-in for %s", identifier)
        raise InvalidCredentials()

    return {"user": user}


def check_accounts(email):
    """Describe the accounts behind an email for the sign-in form.

    Returns ``{"multipleAccounts": False}`` unless the email matches more
    than one account.
    """
    if not email or "@" not in email:
        return {"multipleAccounts": False}

    accounts = find_accounts_by_email(email)
    if len(accounts) <= 1:
        return {"multipleAccounts": False}
    return {"multipleAccounts": True, "accountOptions": account_options(accounts)}
