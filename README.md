# ceciproxy

A small library of forwarding proxies, each run in background threads:

- **HTTP proxy** (`ceciproxy.proxy.httpproxy.HttpProxy`) – forwards plain
  HTTP requests and `CONNECT` tunnels, with optional Basic proxy
  authentication, per-host traffic statistics and a small management API.
- **SOCKS5 proxy** (`ceciproxy.proxy.socksproxy.SocksProxy`) – a SOCKS5
  server with optional username/password authentication and optional TLS.
- **TCP proxy** (`ceciproxy.proxy.tcpproxy.TcpProxy`) – relays raw TCP
  connections to a list of targets chosen round-robin.

The SOCKS5 protocol pieces live in `ceciproxy.socks5` and can be used on
their own: authentication negotiation (`auth`), credential stores
(`credentials`), command rules (`ruleset`), name resolution (`resolver`),
request parsing and replies (`request`) and the server (`server`).

## TCP forwarding

```python
from ceciproxy.proxy.tcpproxy import TcpProxy

proxy = TcpProxy("127.0.0.1:8022", ["10.0.0.5:22", "10.0.0.6:22"])
proxy.start()
# ... later
proxy.stop()
```

`start()` binds the listener, retrying with a growing delay while binding
fails, then accepts in a background thread. Each accepted connection is
paired with the next target in turn (`load_balance`). If a target cannot be
reached the next one is tried, until every target has failed once; the
client connection is then closed.

## SOCKS5 server

```python
from ceciproxy.proxy.socksproxy import SocksProxy

password = "password"
proxy = SocksProxy("127.0.0.1:1080", username="user", password=password, cert=None)
proxy.start()
# ... later
proxy.stop()
```

With no username the server accepts clients without authentication.
Pass a `ceciproxy.cert.Cert` whose `key_file` is set to serve SOCKS over
TLS. Only the `CONNECT` command is carried out; `BIND` and `UDP ASSOCIATE`
are answered with "command not supported".

Lower-level use of the protocol pieces:

```python
from ceciproxy.socks5.credentials import StaticCredentials
from ceciproxy.socks5.auth import UserPassAuthenticator
from ceciproxy.socks5.server import Config, Server

creds = StaticCredentials({"user": "password"})
server = Server(Config(auth_methods=[UserPassAuthenticator(creds)]))
server.listen_and_serve("127.0.0.1:1080")  # blocks until server.close()
```

`Config` also takes a custom `resolver` (default `DNSResolver`), `rules`
(default `permit_all()`; see `PermitCommand` and `permit_none()`), a
`rewriter` for destinations, a `dial` function and a `tls_context`.

## HTTP proxy

```python
from ceciproxy.proxy.httpproxy import HttpProxy

password = "password"
proxy = HttpProxy(
    "127.0.0.1:8080",
    username="user",
    password=password,
    password_file=None,
    cert=None,
    ca_cert=None,
)
proxy.start()
```

When any user is known, clients must send a valid `Proxy-Authorization:
Basic ...` header or get `407`. Users from `password_file` (one
`user:password` pair per line) are loaded at start-up, and users added or
removed with `add_user` / `del_user` or through the API are written back
to that file. A `Cert` with `key_file` set makes the proxy listen with TLS.

Requests whose target host is empty are served by the built-in API:

| Method | Path                      | Purpose                                  |
|--------|---------------------------|------------------------------------------|
| GET    | `/`                       | per-host statistics (HTML, JSON or YAML) |
| GET    | `/api`                    | list of API routes                       |
| GET    | `/api/stats`              | totals only (YAML or JSON)               |
| POST   | `/api/user/{user}/{pass}` | add or change a proxy user               |
| DELETE | `/api/user/{user}`        | remove a proxy user                      |

Append `?format=json` or `?format=yaml` to choose the output format. The
same data is available from Python through `index_data()`, `stats_data()`,
`render_index(fmt)`, `render_stats(fmt)` and `api_routes()`.

## Certificates

`ceciproxy.cert.Cert` fills in default paths under `/var/openceci/cert`
when `correct()` is called, and builds `ssl` contexts for servers
(`server_context()`) and clients (`client_context()`, which skips
verification when `insecure` is set). `get_cert_pool(ca)` loads a CA bundle
and raises `CertError` when the file is missing or holds no certificate.
`Crypt` holds a cipher name and secret; `correct()` defaults the name to
`xor`.

## What is not included

- There is no command-line program and no configuration-file loader; the
  proxies are created and started from Python code.
- The HTTP and SOCKS5 proxies always connect to the destination
  themselves; there is no routing of chosen domains through an upstream
  proxy, no PAC file and no configuration API.