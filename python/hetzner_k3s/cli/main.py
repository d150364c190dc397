#!/usr/bin/env python3
"""
hetzner_k3s/cli/main.py

Command line entry point.

Usage example:
  hetzner-k3s create-cluster --config cluster_config.yaml
  hetzner-k3s upgrade-cluster --config cluster_config.yaml --new-k3s-version v1.24.3+k3s1
  hetzner-k3s delete-cluster --config cluster_config.yaml

The API token is read from HCLOUD_TOKEN, or from 'hetzner_token' in the file.
Setting SSH_DEBUG (or passing --verbose) logs every SSH failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from hetzner_k3s.deployment.cluster import create_cluster, delete_cluster, upgrade_cluster
from hetzner_k3s.utils.config_file import load_config


async def _create(args: argparse.Namespace) -> None:
    config = await load_config(args.config)
    await create_cluster(config)


async def _delete(args: argparse.Namespace) -> None:
    config = await load_config(args.config)
    await delete_cluster(config)


async def _upgrade(args: argparse.Namespace) -> None:
    config = await load_config(args.config)
    await upgrade_cluster(config, args.new_k3s_version, args.config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hetzner-k3s",
        description="Create, upgrade and delete k3s clusters on Hetzner Cloud.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging (same as setting SSH_DEBUG).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create-cluster", help="Create a cluster.")
    create_parser.add_argument("--config", required=True, help="Path to the cluster YAML file.")
    create_parser.set_defaults(func=_create)

    delete_parser = subparsers.add_parser(
        "delete-cluster", help="Delete a cluster and all of its cloud resources."
    )
    delete_parser.add_argument("--config", required=True, help="Path to the cluster YAML file.")
    delete_parser.set_defaults(func=_delete)

    upgrade_parser = subparsers.add_parser(
        "upgrade-cluster", help="Upgrade k3s on every node of a cluster."
    )
    upgrade_parser.add_argument("--config", required=True, help="Path to the cluster YAML file.")
    upgrade_parser.add_argument(
        "--new-k3s-version",
        required=True,
        help="Target k3s release, e.g. v1.24.3+k3s1.",
    )
    upgrade_parser.set_defaults(func=_upgrade)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    debug = args.verbose or bool(os.environ.get("SSH_DEBUG"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
