"""
Models package - Pydantic data models for StoryWriter

Re-exports all models for cleaner imports:
    from src.models import Story, StoryPage, DialogueTurn
"""

from src.models.models import *
