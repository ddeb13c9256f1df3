"""
Pytest configuration and fixtures for testing.
Provides test database, test client, seeded users/products and credentials.
"""
import os

# Point the application at a throwaway database before it is imported
os.environ["DATABASE_URL"] = "sqlite:///./test_swapply.db"
os.environ["BROADCAST_BACKEND"] = "memory"
os.environ["JSON_LOGS"] = "false"

import pytest
from typing import Generator
from sqlalchemy.orm import Session
from fastapi.testclient import TestClient
from db.database import Base, SessionLocal, engine
from db.models import User, Product
from core.security import create_access_token
from main import app
from api.websocket_manager import connection_manager


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_connection_manager():
    """Start every test with no live connections or rooms."""
    connection_manager.active_connections.clear()
    connection_manager.rooms.clear()
    connection_manager.backplane = None
    yield
    connection_manager.active_connections.clear()
    connection_manager.rooms.clear()
    connection_manager.backplane = None


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> TestClient:
    """
    Create a test client bound to the test database.

    Entered as a context manager so the lifespan runs and every HTTP request
    and WebSocket shares one event loop, as under uvicorn.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
def seed_data(test_db: Session) -> dict:
    """
    Seed three users and one product.

    User 2 owns product 99; users 1 and 3 are potential buyers.
    """
    users = [
        User(id=1, name="Alice", picture="https://img.example/alice.png"),
        User(id=2, name="Bruno", picture=None),
        User(id=3, name="Carla", picture=None),
    ]
    test_db.add_all(users)
    test_db.flush()

    product = Product(id=99, owner_id=2, title="Vintage bicycle", images=["bike-front.jpg", "bike-side.jpg"])
    test_db.add(product)
    test_db.commit()

    return {"users": users, "product": product}


def auth_cookie(user_id: int) -> dict:
    """Request headers carrying a valid session cookie for a user."""
    return {"cookie": f"swapply_token={create_access_token(user_id)}"}


@pytest.fixture
def cookie_for():
    return auth_cookie
