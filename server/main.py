import argparse, logging, socket, threading
from typing import Any, Dict
from common.protocol import send_json, recv_json, make_envelope, forget
from server.state import LogState, Outbox, Subscription

HOST = "0.0.0.0"
PORT = 5050
DEFAULT_MSG_LENGTH_LIMIT = 1000   # served to clients as "secure_msg_length"

logger = logging.getLogger(__name__)

def error_env(code: str, **extra) -> Dict[str, Any]:
    '''This function builds an error envelope'''
    return make_envelope("error", dict(code=code, **extra))

def handle_client(conn: socket.socket, addr, state: LogState, config: Dict[str, Any]):
    ''' This function handles communication with a connected client
        Inputs:
        - conn: socket object representing the client connection
        - addr: address of the connected client
        - state: the shared append-only log
        - config: values answered to "config" requests
    '''
    # every frame to this client goes through one outbox: the log lock never waits on this socket
    outbox = Outbox(lambda env: send_json(conn, env), name=f"outbox-{addr}")
    send = outbox.put

    def deliverer(sub_id: str):
        def deliver(path: str, key: str, value: Any):
            send(make_envelope("child_added", {"path": path, "sub": sub_id, "key": key, "value": value},
                               to=sub_id))
        return deliver

    logger.info("client connected from %s", addr)
    try:
        while True:
            env = recv_json(conn)
            if not isinstance(env, dict):
                send(error_env("UNKNOWN_TYPE"))
                continue
            etype = env.get("type")
            payload = env.get("payload") or {}
            if not isinstance(payload, dict):
                payload = {}
            if etype == "push":
                path, value = payload.get("path"), payload.get("value")
                if not isinstance(path, str) or not path:
                    send(error_env("BAD_PATH"))
                elif not isinstance(value, dict):
                    send(error_env("BAD_VALUE"))
                else:
                    key = state.append(path, value)
                    logger.debug("appended %s/%s", path, key)
            elif etype == "subscribe":
                path, sub_id = payload.get("path"), str(payload.get("sub"))
                if not isinstance(path, str) or not path:
                    send(error_env("BAD_PATH", sub=sub_id))
                    continue
                replayed = state.subscribe(Subscription(sub_id=sub_id, path=path, conn=conn,
                                                        deliver=deliverer(sub_id)))
                logger.debug("subscription %s on %s, replayed %d", sub_id, path, replayed)
            elif etype == "unsubscribe":
                state.unsubscribe(conn, str(payload.get("sub")))
            elif etype == "config":
                send(make_envelope("config", dict(config)))
            elif etype == "system" and payload.get("event") == "leave":
                break
            else:
                # ignore/notify
                send(error_env("UNKNOWN_TYPE", type=etype))

    except OSError as exc:
        logger.info("client %s went away: %s", addr, exc)
    except ValueError:
        # bad JSON on the wire: nothing sensible to answer
        logger.exception("protocol error from %s", addr)
    finally:
        dropped = state.drop_connection(conn)
        outbox.close()
        outbox.writer.join(timeout=1.0)   # let queued replies go out before the socket closes
        logger.info("client %s disconnected (%d subscriptions dropped)", addr, dropped)
        forget(conn)
        try:
            conn.close()
        except OSError:
            pass

def serve(srv: socket.socket, state: LogState, config: Dict[str, Any]):
    '''Accept loop; returns once the listening socket is closed'''
    while True:
        try:
            conn, addr = srv.accept()
        except OSError:
            return
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        threading.Thread(target=handle_client, args=(conn, addr, state, config), daemon=True).start()

def main():
    ap = argparse.ArgumentParser(description="Append-only message log server")
    ap.add_argument("--host", default=HOST, help="Bind address")
    ap.add_argument("--port", type=int, default=PORT, help="Bind port")
    ap.add_argument("--msg-length", type=int, default=DEFAULT_MSG_LENGTH_LIMIT,
                    help="Message length limit handed to clients")
    ap.add_argument("--log-level", default="INFO", help="Logging level")
    args = ap.parse_args()

    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    state = LogState()
    config = {"secure_msg_length": args.msg_length}
    logger.info("Server listening on %s:%d", args.host, args.port)
    with socket.create_server((args.host, args.port)) as srv:
        serve(srv, state, config)

if __name__ == "__main__":
    main()
