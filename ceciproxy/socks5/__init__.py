"""SOCKS5 protocol handling: authentication, rules, requests and the server."""