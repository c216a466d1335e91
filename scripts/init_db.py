import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.brgy.models import Permission, Role, User
from scripts._db_utils import script_session

PERMISSIONS = (
    ("certificates.view", "Certificates: view requests and issued documents"),
    ("certificates.request", "Certificates: file and edit requests"),
    ("certificates.approve", "Certificates: approve / reject requests"),
    ("certificates.issue", "Certificates: issue, release, sign, regenerate"),
    ("certificates.invalidate", "Certificates: invalidate issued documents"),
)

# Purok leaders file requests on behalf of residents; admins run the whole workflow.
ROLES = (
    ("admin", "Administrator", tuple(key for key, _ in PERMISSIONS)),
    ("purok_leader", "Purok Leader", ("certificates.view", "certificates.request")),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@barangay.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///brgy.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for key, name, perm_keys in ROLES:
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for pk in perm_keys:
                if perms[pk] not in role.permissions:
                    role.permissions.append(perms[pk])
            roles[key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, name="Administrator", password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
