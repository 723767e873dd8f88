from pydantic import BaseModel


class ConversationDetailsResponse(BaseModel):
    conversation_id: str
    members: list[str]
    online_members: list[str]
    last_sequence: int
    typing_users: list[str]


class PresenceResponse(BaseModel):
    user_id: str
    online: bool
    connections: int
    conversations: list[str]


class HubStatsResponse(BaseModel):
    status: str
    connections: int
    authenticated_connections: int
    online_users: int
    conversations: int
