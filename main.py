#!/usr/bin/env python3
"""
Password hashing tools for provisioning Basic credentials.

Usage:
  python main.py argon <password>            print an argon2id encoded hash
  python main.py bcrypt <password> [cost]    print a bcrypt hash (cost 12 by default)
  python main.py bcrypt_score                print the highest bcrypt cost under 250 ms

The same commands are installed as the `argon`, `bcrypt` and `bcrypt_score`
console scripts. Wrong usage exits with status 1.

Environment variables:
  ARGON_MEMORY, ARGON_ITERATIONS, ARGON_PARALLELISM, ARGON_SALT_LENGTH,
  ARGON_KEY_LENGTH   argon2id parameters (see core/config.py).
  BCRYPT_COST        default bcrypt cost.

The printed hashes go into MEMORY_USERS entries ("id:login:<hash>") or the
auth.basic table.
"""

import argparse
import sys
from typing import Optional

from auth import passwords

# Seconds a single bcrypt verification may take on this host.
_SCORE_BUDGET = 0.25


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 (not 2) on wrong usage."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _argon_parser(prog: str = "argon") -> argparse.ArgumentParser:
    parser = _Parser(prog=prog, description="Print the argon2id encoded hash of a password.")
    parser.add_argument("password")
    return parser


def _bcrypt_parser(prog: str = "bcrypt") -> argparse.ArgumentParser:
    parser = _Parser(prog=prog, description="Print the bcrypt hash of a password.")
    parser.add_argument("password")
    parser.add_argument("cost", nargs="?", type=int, default=None, help="bcrypt cost, 4-31 (default: BCRYPT_COST)")
    return parser


def _bcrypt_score_parser(prog: str = "bcrypt_score") -> argparse.ArgumentParser:
    return _Parser(prog=prog, description="Print the highest bcrypt cost verifying in under 250 ms.")


def _run_argon(args: argparse.Namespace) -> int:
    print(passwords.encode(args.password))
    return 0


def _run_bcrypt(args: argparse.Namespace) -> int:
    try:
        print(passwords.hash_bcrypt(args.password, args.cost))
    except ValueError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    return 0


def _run_bcrypt_score(args: argparse.Namespace) -> int:
    print(passwords.find_best_cost(_SCORE_BUDGET))
    return 0


def argon_main(argv: Optional[list[str]] = None) -> int:
    return _run_argon(_argon_parser().parse_args(argv))


def bcrypt_main(argv: Optional[list[str]] = None) -> int:
    return _run_bcrypt(_bcrypt_parser().parse_args(argv))


def bcrypt_score_main(argv: Optional[list[str]] = None) -> int:
    return _run_bcrypt_score(_bcrypt_score_parser().parse_args(argv))


def main(argv: Optional[list[str]] = None) -> int:
    parser = _Parser(prog="main.py", description="Password hashing tools.")
    commands = parser.add_subparsers(dest="command", required=True)

    argon = commands.add_parser("argon", help="argon2id encoded hash")
    argon.add_argument("password")
    argon.set_defaults(run=_run_argon)

    bcrypt = commands.add_parser("bcrypt", help="bcrypt hash")
    bcrypt.add_argument("password")
    bcrypt.add_argument("cost", nargs="?", type=int, default=None)
    bcrypt.set_defaults(run=_run_bcrypt)

    score = commands.add_parser("bcrypt_score", help="best bcrypt cost for this host")
    score.set_defaults(run=_run_bcrypt_score)

    args = parser.parse_args(argv)
    return args.run(args)


if __name__ == "__main__":
    sys.exit(main())
