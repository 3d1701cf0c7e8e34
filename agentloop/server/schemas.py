"""Request bodies for the HTTP API."""

from pydantic import BaseModel, Field


class CreateConversationRequest(BaseModel):
    user_id: str = Field(default="anonymous", min_length=1, description="Owning user")
    title: str | None = Field(default=None, description="Optional title; generated from the first message otherwise")


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, description="The user's message")
    caller_id: str | None = Field(
        default=None, description="Identity tools run on behalf of; defaults to the conversation owner"
    )
