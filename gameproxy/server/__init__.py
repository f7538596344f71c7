"""TCP listener, authentication, game server and proxy server."""