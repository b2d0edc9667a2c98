"""Registration, login and current-user endpoints"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_current_user
from finance_gateway.api.routes.schemas import AuthResponse, LoginRequest, MeResponse, RegisterRequest, UserSchema
from finance_gateway.domain.exceptions import AuthError, ValidationError
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import UserRepository
from finance_gateway.infrastructure.database.session import get_db
from finance_gateway.infrastructure.security import create_access_token, hash_password, verify_password

router = APIRouter()


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        user=UserSchema.model_validate(user),
        token=create_access_token(user.id, user.email),
    )


@router.post("/register", response_model=AuthResponse, status_code=201)
def register(request_body: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account and return a bearer token"""
    users = UserRepository(db)
    if users.get_by_email(request_body.email):
        raise ValidationError("User with this email already exists")

    user = users.create_user(
        email=request_body.email,
        password_hash=hash_password(request_body.password),
        first_name=request_body.first_name,
        last_name=request_body.last_name,
    )
    users.record_login(user)
    db.commit()
    db.refresh(user)
    return _auth_response(user)


@router.post("/login", response_model=AuthResponse)
def login(request_body: LoginRequest, db: Session = Depends(get_db)):
    users = UserRepository(db)
    user = users.get_by_email(request_body.email)
    if user is None or not verify_password(request_body.password, user.password_hash):
        raise AuthError("Invalid credentials")

    users.record_login(user)
    db.commit()
    db.refresh(user)
    return _auth_response(user)


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    return MeResponse(user=UserSchema.model_validate(user))
