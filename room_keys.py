MEMBER_KEY = "member:{name}" # display name - room-member namespace
PEER_KEY = "peer:{identifier}" # peer id - peer-endpoint namespace

# **Registry table**
# - One insertion-ordered dict per room, key -> Connection.
# - Both namespaces share the table; the prefix keeps them apart, so a
#   member named "x" and a peer with id "x" never collide.
# - A key is held by at most one live connection at a time.
