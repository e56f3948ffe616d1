from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import PersistenceFailure
from models.users import User
from utils.logger import get_logger

logger = get_logger(__name__)


class UserService:

    @staticmethod
    def sync_from_identity(db: Session, identity: dict) -> User:
        """
        Create or refresh the local profile for the token's subject.

        Only fields present in the token overwrite what is stored.
        """
        user = db.get(User, identity["user_id"])
        if user is None:
            user = User(id=identity["user_id"], role=identity.get("user_role") or "customer")
            db.add(user)

        for field in ("email", "full_name", "phone_number"):
            value = identity.get(field)
            if value:
                setattr(user, field, value.lower().strip() if field == "email" else value)
        if identity.get("user_role"):
            user.role = identity["user_role"]

        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.error("Could not sync user profile",
                         extra={"user_id": identity["user_id"], "error_type": type(e).__name__})
            raise PersistenceFailure("Your profile could not be loaded. Please try again.") from e

        db.refresh(user)
        return user
