from __future__ import annotations
from argparse import ArgumentParser, Namespace
from getpass import getpass


def _serve(args: Namespace) -> None:
    from . import get_settings
    from .server_ldap import main

    settings = get_settings(args.config)
    overrides = {
        field: value
        for field, value in (
            ("host", args.host),
            ("port", args.port),
            ("db_path", args.db),
        )
        if value is not None
    }
    main(settings.model_copy(update=overrides))


def _hash(_args: Namespace) -> None:
    from .server_ldap.handlers import hash_password

    while True:
        password = getpass(prompt="Password: ")
        if password == getpass(prompt="Repeat password: "):
            break
        print("passwords do not match")
    print(hash_password(password.encode()))


def main() -> None:
    parser = ArgumentParser(prog="simpleldap")
    subparsers = parser.add_subparsers(required=True)
    subparser = subparsers.add_parser("serve", help="Run LDAP server")
    subparser.add_argument(
        "config", nargs="?", help="settings json (default settings_ldap.json)"
    )
    subparser.add_argument("--host")
    subparser.add_argument("--port", "-p", type=int)
    subparser.add_argument("--db", help="path to sqlite database")
    subparser.set_defaults(command=_serve)
    subparser = subparsers.add_parser(
        "hash", help="Print `passhash` value for a password"
    )
    subparser.set_defaults(command=_hash)
    args = parser.parse_args()
    args.command(args)


if __name__ == "__main__":
    main()
