"""Message framing, reading and connection counting."""