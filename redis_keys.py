REDIS_SESSION_KEY = "session:{token}" # session token -> user id
REDIS_ACL_KEY = "conversation:acl:{slug}" # conversation id - set of user ids allowed to join
REDIS_MESSAGES_KEY = "conversation:messages:{slug}" # conversation id - list of message JSON, newest last

# **Example `conversation:messages:{id}` entry**
# - `{"id": "...", "conversationId": "c1", "senderId": "alice", "body": "hello",
#    "sequence": 1, "sentAt": "2025-11-17T12:34:56+00:00"}`
# - list is trimmed to MESSAGE_RETENTION entries on every write
