# micropay

A bank server and an interactive client. The server keeps accounts and a list of
who is online. The client pays other online users directly, peer to peer. Every
link is TLS 1.2, both client to server and client to client.

## Installing

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Certificates

The server and the client's payment listener both present a certificate. They
read `mycert.pem` and `mykey.pem` from the working directory. No side verifies
the certificate of the other side, so any self-signed pair will do.

- The server will not start without the files.
- The client still starts without them and prints a warning. Incoming payments
  then fail their TLS handshake.

## Running the server

```
micropay-server <port> [-d | -s | -a]
```

- No option: quiet.
- `-d`: log registrations, logins, exits and transfers.
- `-s`: as `-d`, and print the online list whenever someone logs in or out.
- `-a`: as `-s`, and log every command received and every reply sent.

With the wrong number of arguments the server prints its usage and exits. It
does the same with an unknown option.

Each connection is served on its own thread. A user who disconnects is marked
offline.

## Running the client

```
micropay-client <server_ip> <server_port>
```

The client shows a box with your user, balance, address and the commands. It
then reads lines from the keyboard. Each line is cut at its first space, tab or
line break.

| Command              | Meaning                                                   |
|----------------------|-----------------------------------------------------------|
| `REGISTER#alice`     | create the account `alice`                                |
| `alice#5001`         | log in as `alice`, listening for payments on port 5001    |
| `List`               | fetch your balance and the online users                   |
| `alice#100#bob`      | pay `bob` 100, sent straight to bob's listener            |
| `Exit`               | quit                                                      |

### How a payment works

The client checks a payment before sending it:

- you must be logged in;
- you must pay under your own name (letter case is ignored);
- you must not pay yourself;
- the amount must be positive and no larger than your last known balance;
- the receiver must be in your last online list.

The payment then goes over TLS to the receiver's listener. The receiving client
forwards it to the server, which records it and replies `Transfer OK`. The
receiving client then asks for a fresh `List`. While this is going on, typed
commands are held back with a warning.

## Server replies

| Reply                      | When                                          |
|----------------------------|-----------------------------------------------|
| `100 OK`                   | registration succeeded                        |
| `210 FAIL`                 | the name is already registered                |
| `220 AUTH_FAIL`            | login for a name that was never registered    |
| `230 Input format error`   | the command was not understood                |
| `Please login first`       | `List` before logging in                      |
| `Transfer OK`              | a payment was recorded                        |
| `Transfer Fail`            | sender or receiver is unknown                 |

A successful login is answered with a list reply. A list reply has these lines,
in order:

1. the balance;
2. the server key (always the placeholder `ServerPubKey_Dummy`);
3. the number of online users;
4. one `name#ip#port` line for each online user, ordered by name.

On `Exit` the server closes the connection without replying.

## Using it as a library

- `micropay.ledger.Ledger` is a thread-safe account book. It provides
  `register`, `login`, `logout`, `transfer`, `balance_of`, `online_accounts`
  and `list_message`.
- `micropay.ledger.Connection` applies raw commands from one client to a ledger
  and returns the replies.
- `micropay.server.BankServer` accepts clients and serves each one on its own
  thread. Pass it an `ssl.SSLContext` for TLS, for example one from
  `make_server_context`.
- `micropay.listing.parse_list` reads the list format.
  `micropay.listing.parse_transfer` reads the payment format.
- `micropay.session.ClientSession` holds a client's state and runs the payment
  checks, without any sockets.
- `micropay.peer` opens peer listeners and sends and receives single payments.

## What it does not do

- Accounts live only in memory and start with a balance of 10000. Nothing is
  saved when the server stops.
- The server does not check balances on a transfer, so a balance can go
  negative. Only the paying client checks its own last known balance.
- The server key is a fixed placeholder, not a real key.
- No certificates are verified on any link.