"""
Channel event names.

Transport-level events are fired by the transport itself; the rest form the
conversation protocol spoken with the chat server.
"""

# Transport level
CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"

# client -> server
JOIN_CONVERSATION = "join-conversation"
LEAVE_CONVERSATION = "leave-conversation"
SEND_MESSAGE = "send-message"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"

# server -> client
NEW_MESSAGE = "new-message"
MESSAGES_READ = "messages-read"
CONVERSATION_JOINED = "conversation-joined"
JOIN_ERROR = "join-error"
USER_TYPING = "user-typing"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
CHAT_HISTORY = "chat-history"
