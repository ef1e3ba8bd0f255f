REDIS_ROOM_KEY = "room:meta:{name}" # room name - hash of occupant slots
REDIS_ROOM_LOCK_KEY = "room:lock:{name}" # room name - per-room mutation lock
REDIS_CLIENT_CHANNEL = "client:channel:{client_id}" # client id - pub/sub delivery channel
REDIS_TOKEN_KEY = "channel:token:{token}" # channel token -> client id, with TTL

# **Example `room:meta:{name}` hash fields**
# - `user1` = occupant of slot 1, or "" when empty
# - `user2` = occupant of slot 2, or "" when empty
# - `connected1` = "1" once slot 1 attached its delivery channel, else "0"
# - `connected2` = same for slot 2
