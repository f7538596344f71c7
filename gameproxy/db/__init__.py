"""SQLite storage for clients, game servers, sessions and statistics."""