"""
pytest configuration and fixtures

Each test gets a fresh in-memory database (mongomock) seeded with three users
and one blog per user, created through the API with bearer tokens.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-the-bloglist-suite")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Store
from main import create_access_token, create_app, hash_password

INITIAL_USERS = [
    {"username": "mluukkai", "name": "Matti Luukkainen", "password": "salainen"},
    {"username": "mchan", "name": "Michael Chan", "password": "reactpatterns"},
    {"username": "edijkstra", "name": "Edsger W. Dijkstra", "password": "goto-harmful"},
]

INITIAL_BLOGS = [
    {
        "title": "Type wars",
        "author": "Robert C. Martin",
        "url": "http://blog.cleancoder.com/uncle-bob/2016/05/01/TypeWars.html",
        "likes": 2,
    },
    {
        "title": "React patterns",
        "author": "Michael Chan",
        "url": "https://reactpatterns.com/",
        "likes": 7,
    },
    {
        "title": "Go To Statement Considered Harmful",
        "author": "Edsger W. Dijkstra",
        "url": "http://www.u.arizona.edu/~rubinson/copyright_violations/Go_To_Considered_Harmful.html",
        "likes": 5,
    },
]


@pytest.fixture
def store():
    store = Store(mongomock.MongoClient(), "bloglist_test")
    yield store
    store.close()


@pytest.fixture
def client(store):
    with TestClient(create_app(store)) as client:
        yield client


@pytest.fixture
def users(store):
    """Seed INITIAL_USERS directly, the way a fresh deployment would hold them."""
    store["user"].delete_many({})
    for user in INITIAL_USERS:
        store["user"].insert_one({
            "username": user["username"],
            "name": user["name"],
            "password_hash": hash_password(user["password"]),
            "blogs": [],
        })
    return INITIAL_USERS


@pytest.fixture
def token_for(store):
    def _token_for(name):
        user = store["user"].find_one({"name": name})
        return create_access_token({"username": user["username"], "id": str(user["_id"])})
    return _token_for


@pytest.fixture
def auth_header(token_for):
    def _auth_header(name):
        return {"Authorization": f"Bearer {token_for(name)}"}
    return _auth_header


@pytest.fixture
def blogs(client, store, users, auth_header):
    store["blog"].delete_many({})
    for user, blog in zip(users, INITIAL_BLOGS):
        response = client.post("/api/blogs", json=blog, headers=auth_header(user["name"]))
        assert response.status_code == 201
    return INITIAL_BLOGS


def users_in_db(store):
    return list(store["user"].find({}))


def blogs_in_db(store):
    return list(store["blog"].find({}))
