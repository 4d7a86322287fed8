"""
Database Schemas

Define the MongoDB collection schemas here using Pydantic models.
Each Pydantic model corresponds to a MongoDB collection. The collection
name is the lowercase of the class name by convention.

Example: class Recipe -> collection "recipe"

Request bodies are declared loosely (everything optional) because
validation.py turns bad input into itemized messages instead of 422s.
"""
from typing import Optional, List
from pydantic import BaseModel, Field
from datetime import datetime

RECIPE_STATUSES = ("draft", "published")
COMMENT_STATUSES = ("pending", "approved")

# Auth/User
class AdminUser(BaseModel):
    username: str = Field(..., description="Login name (unique)")
    email: str = Field(..., description="Admin email (unique)")
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: str = Field("admin", description="Only 'admin' is used")
    last_login: Optional[datetime] = Field(None)

# Recipes
class Recipe(BaseModel):
    title: str
    intro: Optional[str] = None
    categories: List[str] = Field(default_factory=list, description="Values from the fixed category list")
    tags: List[str] = Field(default_factory=list)
    ingredients: List[str] = Field(..., description="Ordered ingredient lines")
    steps: List[str] = Field(..., description="Ordered preparation steps")
    prep_time: int = Field(0, ge=0, description="Minutes")
    cook_time: int = Field(0, ge=0, description="Minutes")
    servings: int = Field(1, ge=1)
    notes: Optional[str] = None
    status: str = Field("draft", description="draft|published")
    image: Optional[str] = Field(None, description="Media key, e.g. recipes/1718000000000-a1b2c3d4.jpg")

# Comments
class Comment(BaseModel):
    recipe_id: str = Field(..., description="Associated recipe id (string)")
    author: str = Field("Anonimas", max_length=100)
    email: Optional[str] = Field(None, description="Never shown publicly")
    content: str = Field(..., min_length=1, max_length=1000)
    status: str = Field("pending", description="pending|approved")

# Newsletter
class Subscriber(BaseModel):
    email: str = Field(..., description="Normalized (lower-case) address, unique")
    active: bool = True
    subscribed_at: datetime
    unsubscribed_at: Optional[datetime] = None

# About page (stored as settings/about)
class AboutSection(BaseModel):
    title: str = ""
    content: str = ""

class SocialLinks(BaseModel):
    email: str = ""
    instagram: str = ""
    facebook: str = ""
    pinterest: str = ""

class AboutPage(BaseModel):
    title: str
    subtitle: str = ""
    intro: str = ""
    sections: List[AboutSection] = Field(default_factory=list)
    social: SocialLinks = Field(default_factory=SocialLinks)
    image: Optional[str] = None
    sidebar_image: Optional[str] = None

# Category view (derived, rebuilt from recipes)
class CategoryCount(BaseModel):
    name: str
    count: int = Field(0, ge=0)

# ---------------------- Request bodies ----------------------
class LoginRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

class AdminSetupRequest(BaseModel):
    setup_key: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

class CommentCreate(BaseModel):
    author: Optional[str] = None
    email: Optional[str] = None
    content: Optional[str] = None

class SubscribeRequest(BaseModel):
    email: Optional[str] = None

class NewsletterSend(BaseModel):
    subject: Optional[str] = None
    content: Optional[str] = None

class NewsletterTest(BaseModel):
    email: Optional[str] = None
    recipe_id: Optional[str] = None

class SubscriberImport(BaseModel):
    emails: List[str] = Field(default_factory=list)
