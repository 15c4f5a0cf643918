"""
Database Schemas

MongoDB collection schemas for the bloglist API, defined as Pydantic models.
Each Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Blog -> "blog" collection

Fields holding references to other documents carry a "ref" entry naming the
target collection; they are stored as ObjectIds and exposed as id strings.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Union

class User(BaseModel):
    """Users collection schema (collection name: user)"""
    username: str = Field(..., min_length=3, description="Login name (unique)")
    name: Optional[str] = Field(None, description="Display name")
    password_hash: str = Field(..., min_length=1, description="BCrypt hashed password")
    blogs: List[str] = Field(default_factory=list, description="Blogs created by this user",
                             json_schema_extra={"ref": "blog"})

class Blog(BaseModel):
    """Blogs collection schema (collection name: blog)"""
    title: str = Field(..., min_length=1, description="Post title")
    author: Optional[str] = Field(None, description="Post author")
    url: str = Field(..., min_length=1, description="Link to the post")
    likes: Union[int, float] = Field(0, description="Like count")
    user: Optional[str] = Field(None, description="Owning user id",
                                json_schema_extra={"ref": "user"})

    @field_validator("likes", mode="before")
    @classmethod
    def default_likes(cls, value):
        return 0 if value is None else value

# API payloads

class LoginPayload(BaseModel):
    username: str
    password: str

class TokenResponse(BaseModel):
    token: str
    username: str
    name: Optional[str] = None
