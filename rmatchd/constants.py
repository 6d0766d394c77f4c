# Matchmaking hub protocol constants (numeric keys and message types)

RMATCH_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_DST = 5
K_BODY = 6

# Message types
T_REGISTER = 1
T_REGISTERED = 2

T_OFFER = 10
T_ANSWER = 11
T_CANDIDATE = 12

T_PING = 30
T_PONG = 31

T_ERROR = 40

SIGNAL_TYPES = frozenset({T_OFFER, T_ANSWER, T_CANDIDATE})

SIGNAL_NAMES = {
    T_OFFER: "offer",
    T_ANSWER: "answer",
    T_CANDIDATE: "candidate",
}

# REGISTERED body keys
B_REGISTERED_IDENTITY = 0
B_REGISTERED_HUB = 1
B_REGISTERED_VER = 2

# Index record metadata keys
M_IDENTITY = "identity"
M_INTERESTS = "interests"
M_LAST_UPDATED = "last_updated"
