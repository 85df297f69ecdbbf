# Signaling protocol constants (numeric keys and message types)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 6

# Session setup
T_CREATE = 10
T_CREATED = 11
T_CREATE_ERROR = 12
T_JOIN = 13
T_JOIN_SUCCESS = 14
T_JOIN_ERROR = 15
T_NEW_PEER_JOINED = 16
T_CANCEL = 17
T_CANCELLED = 18
T_CANCEL_ERROR = 19

# Handshake relay
T_RELAY_OFFER = 20
T_OFFER_RECEIVED = 21
T_RELAY_ANSWER = 22
T_ANSWER_RECEIVED = 23
T_RELAY_CANDIDATE = 24
T_CANDIDATE_RECEIVED = 25

# Teardown
T_SESSION_CLOSED = 30
T_PEER_LEFT = 31

T_PING = 40
T_PONG = 41

T_ERROR = 50

# Inbound relay type -> outbound type delivered to the target
RELAY_FORWARDS = {
    T_RELAY_OFFER: T_OFFER_RECEIVED,
    T_RELAY_ANSWER: T_ANSWER_RECEIVED,
    T_RELAY_CANDIDATE: T_CANDIDATE_RECEIVED,
}

# Item metadata keys (CREATE body entries, JOIN_SUCCESS items)
B_ITEM_NAME = 0
B_ITEM_SIZE = 1
B_ITEM_MIME = 2

# CREATED / CANCEL / CANCELLED body keys
B_PUBLIC_ID = 0
B_DELETION_SECRET = 1

# JOIN_SUCCESS body keys
B_ITEMS = 0
B_PEERS = 1

# NEW_PEER_JOINED / PEER_LEFT body keys
B_PEER_ID = 0

# Relay body keys. B_PAYLOAD is shared by inbound and forwarded bodies.
B_TARGET = 0
B_PAYLOAD = 1
B_FROM = 2

# URL-safe alphabet for public ids and deletion secrets (64 symbols).
ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"

# Components logging under "oshub.<name>"; keys accepted in [logging.levels].
HUB_LOGGERS = (
    "groups",
    "hub",
    "lifecycle",
    "reconciler",
    "relay",
    "resources",
    "router",
    "store",
)
