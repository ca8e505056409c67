"""
Main entry point for the secure chat console client.
Ask for a display name, connect to the log server, then chat line by line.
"""
import argparse, logging, sys
from typing import Optional
from .net import NetClient, MESSAGES_PATH, LogError
from .chat import ChatSession, EmptyMessageError, MessageTooLongError, EncryptionUnavailableError
from .settings import Preferences, EncryptionModeSwitch, DEFAULT_PREFS_PATH, MODES, CRYPTO_ALGORITHM_KEY
from common.crypto import CipherCodec, DEFAULT_KEY
from common.messages import MessageRecord

HELP = "commands: /mode none|aes   /photo <url>   /resume   /quit"


def show(record: MessageRecord):
    ''' Print one decrypted message '''
    if record.is_photo:
        print(f"[{record.sender_name}] (photo) {record.photo_url}")
    else:
        print(f"[{record.sender_name}] {record.text}")


def show_error(error: LogError):
    print(f"*** subscription error: {error.code}. Type /resume to reconnect and re-attach.")


def handle_line(session: ChatSession, mode: EncryptionModeSwitch, line: str,
                net: Optional[NetClient] = None) -> bool:
    '''
    Run one line of user input.
    Inputs:
    - net: the session's connection; /resume reconnects it when it was lost
    Output: False when the user asked to quit
    '''
    parts = line.split()
    command = parts[0] if parts else ""
    if line in ("/quit", "/exit"):
        return False
    if command == "/mode":
        if len(parts) != 2 or parts[1] not in MODES:
            print(f"usage: /mode {'|'.join(MODES)} (now: {mode.current()})")
        else:
            mode.set(parts[1])
        return True
    if command == "/photo":
        url = line.strip()[len("/photo"):].strip()
        if not url:
            print("usage: /photo <url>")
            return True
        session.send_photo(url)
        return True
    if line == "/resume":
        if net is not None and not net.running:
            net.connect()
            print("*** reconnected")
        session.pause()
        session.resume()
        return True
    if line == "/help":
        print(HELP)
        return True
    session.send_text(line)
    return True


def main():
    """
    Start the chat client.

    Step 1: Ask for a display name (sign-in is out of scope, the name is trusted)
    Step 2: Connect to the log server and fetch the client config
    Step 3: Attach the decrypting stream and read input until /quit
    """
    # Parse command line arguments
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="127.0.0.1", help="Server host address")
    ap.add_argument("--port", type=int, default=5050, help="Server port")
    ap.add_argument("--path", default=MESSAGES_PATH, help="Log collection to chat on")
    ap.add_argument("--prefs", default=str(DEFAULT_PREFS_PATH), help="Preferences file")
    ap.add_argument("--key-hex", default=None, help="Shared 16-byte key as hex (default: built-in key)")
    ap.add_argument("--name", default=None, help="Display name (asked interactively if omitted)")
    ap.add_argument("--log-level", default="WARNING", help="Logging level")
    args = ap.parse_args()

    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        codec = CipherCodec(bytes.fromhex(args.key_hex) if args.key_hex else DEFAULT_KEY)
    except ValueError as exc:
        ap.error(f"--key-hex: {exc}")
    prefs = Preferences(args.prefs)
    mode = EncryptionModeSwitch(prefs)

    def on_pref_changed(p: Preferences, k: str):
        if k == CRYPTO_ALGORITHM_KEY:
            print(f"*** encryption: {mode.current()}")
    prefs.register_listener(on_pref_changed)

    username = args.name or input("Name: ").strip()
    if not username:
        print("Login cancelled. Exiting program.")
        return

    net = NetClient(args.host, args.port, name=username)
    try:
        net.connect()
    except OSError as exc:
        print(f"Cannot reach server at {args.host}:{args.port}: {exc}")
        sys.exit(1)

    session = ChatSession(net.reference(args.path), codec, mode,
                          on_message=show, on_error=show_error)
    session.apply_config(net.fetch_config())
    session.sign_in(username)
    print(f"Connected as user: {username}, encryption: {mode.current()}")
    print(HELP)

    try:
        for raw in sys.stdin:
            line = raw.rstrip("\n")
            try:
                if not handle_line(session, mode, line, net):
                    break
            except EmptyMessageError:
                continue
            except (MessageTooLongError, EncryptionUnavailableError, ValueError) as exc:
                print(f"*** not sent: {exc}")
            except ConnectionError as exc:
                print(f"*** connection lost: {exc}. Type /resume to reconnect.")
            except OSError as exc:
                # failed reconnect, or a setting that could not be saved
                print(f"*** failed: {exc}")
    except KeyboardInterrupt:
        pass
    finally:
        session.close()
        net.close()


if __name__ == "__main__":
    main()
