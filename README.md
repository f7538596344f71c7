# gameproxy

A TCP reverse proxy that sits between game clients and game servers.

Clients connect to the proxy and authenticate. The proxy then picks a
running game server that still has capacity. If none is available, it
starts a new one in-process on a free port. The proxy authenticates the
client with that server and relays messages in both directions. Every
message on the wire is framed with a 4-byte big-endian length prefix.

Clients, game servers, proxy sessions and traffic counters are kept in a
SQLite database. A background task refreshes the aggregate statistics
periodically.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Command line

```
gameproxy          # start a proxy on localhost:8080 and run a simulation of many clients
gameproxy simple   # start a proxy and a single client that sends a few messages
```

## Library use

```python
from gameproxy.server.proxy import ProxyServer, ProxyServerConfig
from gameproxy.client import Client, ClientConfig

proxy = ProxyServer(ProxyServerConfig(host="localhost", port="8080",
                                      timeout=30.0, database_path="./proxy.db"))
proxy.start()

client = Client(ClientConfig(name="player"))
client.connect("localhost", "8080")
client.send("hello")
client.close()

print(proxy.get_stats())
proxy.stop()
```

### Lower-level building blocks

- `gameproxy.netutils.framing`: `send_message`, `read_message` and `forward_msg` handle length-prefixed messages.
- `gameproxy.netutils.reader`: `MessageReader` and `listen_for_messages` put incoming messages on a queue.
- `gameproxy.netutils.connection`: `ConnectionManager` counts connections against a capacity.
- `gameproxy.db.state_manager`: `StateManager` is the facade over the SQLite repositories.
- `gameproxy.prettylog`: `install` and `with_component` set up coloured, component-tagged log output.