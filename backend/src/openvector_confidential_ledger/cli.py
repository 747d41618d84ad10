from __future__ import annotations

from dataclasses import dataclass

import argparse

@dataclass(frozen=True, slots=True)
class CliArgs:
    config_file_path: str
    command: str
    record_id: int | None = None

def parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = argparse.ArgumentParser(description='Inspect a confidential ledger from its event log')
    parser.add_argument('config', type=str, help='Path to the config file')
    parser.add_argument(
        'command',
        choices=['replay', 'audit'],
        help='replay: rebuild the ledger and summarise it, audit: print the grant and disclosure trail',
    )
    parser.add_argument('--record-id', type=int, default=None, help='Restrict the audit trail to one record')
    args = parser.parse_args(argv)
    return CliArgs(config_file_path=args.config, command=args.command, record_id=args.record_id)
