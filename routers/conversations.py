from fastapi import APIRouter, HTTPException, Request

from logging_config import get_logger
from schemas.conversations import ConversationDetailsResponse, HubStatsResponse, PresenceResponse

logger = get_logger(__name__)

conversations_router = APIRouter(tags=["conversations"])


@conversations_router.get("/health", response_model=HubStatsResponse)
async def health(request: Request):
    hub = request.app.state.hub
    stats = await hub.stats()
    return HubStatsResponse(status="ok", **stats)


@conversations_router.get("/conversations/{conversation_id}", response_model=ConversationDetailsResponse)
async def get_conversation_details(conversation_id: str, request: Request):
    """
    Live view of a conversation held by the hub.

    Returns:
    - members: every user with a membership, connected or not
    - online_members: members with at least one live connection
    - last_sequence: sequence number of the latest message
    - typing_users: members with an active typing indicator
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Conversation details request for {conversation_id} from {client_host}")

    snapshot = await request.app.state.hub.conversation_snapshot(conversation_id)
    if snapshot is None:
        logger.warning(f"Conversation details failed: {conversation_id} not found")
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationDetailsResponse(**snapshot)


@conversations_router.get("/users/{user_id}/presence", response_model=PresenceResponse)
async def get_user_presence(user_id: str, request: Request):
    snapshot = await request.app.state.hub.presence_snapshot(user_id)
    return PresenceResponse(**snapshot)
