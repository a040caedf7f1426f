"""NETFORGE Command Line Interface.

Thin argparse front end over :class:`netforge.commands.DeploymentCommands`.
This is the only module that prints to the terminal or decides the exit
status.
"""

from __future__ import annotations

import argparse
import asyncio
import shlex
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from netforge.commands import DeploymentCommands
from netforge.config.settings import get_settings
from netforge.errors import LockLost, LockTimeout, NetforgeError, RemoteConfigMismatch
from netforge.kubernetes.clusters import ClusterAddressBook
from netforge.observability._logging import configure_logging
from netforge.remote.manager import ConsistencyReport, DeploymentSeed, ModifyResult
from netforge.remote.models import DEFAULT_DNS_BASE_DOMAIN, DEFAULT_DNS_CONSENSUS_NODE_PATTERN
from netforge.version import __version__

if TYPE_CHECKING:
    from argparse import Namespace


Handler = Callable[[DeploymentCommands, "Namespace"], Awaitable[int]]


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="netforge",
        description="NETFORGE - multi-cluster test network orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  netforge deployment create -d deploy-1 -n ns1 --cluster-ref a --nodes node1,node2
  netforge cluster add -d deploy-1 --cluster-ref b --context kind-b
  netforge cluster map --cluster-ref c --context kind-c
  netforge node add -d deploy-1 --node-alias node3 --cluster-ref b
  netforge deployment check -d deploy-1
  netforge lock status -d deploy-1
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v: debug logs)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Never prompt; fall back to the active kubeconfig context",
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        default=None,
        help="Path to the local cluster reference file",
    )
    parser.add_argument(
        "--kubeconfig",
        type=str,
        default=None,
        help="Path to kubeconfig file",
    )

    groups = parser.add_subparsers(dest="group", help="Command groups")

    # deployment
    deployment = groups.add_parser("deployment", help="Manage deployments")
    deployment_actions = deployment.add_subparsers(dest="action")

    create = deployment_actions.add_parser("create", help="Create a deployment")
    _add_deployment_arg(create)
    create.add_argument("--namespace", "-n", required=True, help="Namespace of the deployment")
    create.add_argument("--cluster-ref", required=True, help="Primary cluster reference")
    create.add_argument("--context", default=None, help="Kubeconfig context of the cluster")
    create.add_argument(
        "--nodes",
        default="",
        help="Comma separated consensus node aliases (node1,node2,...)",
    )
    create.add_argument("--dns-base-domain", default=DEFAULT_DNS_BASE_DOMAIN)
    create.add_argument("--dns-consensus-node-pattern", default=DEFAULT_DNS_CONSENSUS_NODE_PATTERN)

    destroy = deployment_actions.add_parser("destroy", help="Delete the remote configuration")
    _add_deployment_arg(destroy)

    check = deployment_actions.add_parser(
        "check", help="Verify every cluster holds the same configuration"
    )
    _add_deployment_arg(check)

    # node
    node = groups.add_parser("node", help="Manage consensus nodes")
    node_actions = node.add_subparsers(dest="action")

    node_add = node_actions.add_parser("add", help="Add a consensus node")
    _add_deployment_arg(node_add)
    node_add.add_argument("--node-alias", required=True)
    node_add.add_argument("--cluster-ref", default=None, help="Hosting cluster (default: primary)")

    node_remove = node_actions.add_parser("remove", help="Remove a consensus node")
    _add_deployment_arg(node_remove)
    node_remove.add_argument("--node-alias", required=True)

    # cluster
    cluster = groups.add_parser("cluster", help="Manage member clusters")
    cluster_actions = cluster.add_subparsers(dest="action")

    cluster_add = cluster_actions.add_parser("add", help="Attach a cluster to a deployment")
    _add_deployment_arg(cluster_add)
    cluster_add.add_argument("--cluster-ref", required=True)
    cluster_add.add_argument("--context", default=None)
    cluster_add.add_argument("--dns-base-domain", default=None)
    cluster_add.add_argument("--dns-consensus-node-pattern", default=None)

    cluster_map = cluster_actions.add_parser(
        "map", help="Map a cluster reference to a kubeconfig context"
    )
    cluster_map.add_argument("--cluster-ref", required=True)
    cluster_map.add_argument("--context", required=True)

    # lock
    lock = groups.add_parser("lock", help="Inspect the deployment lock")
    lock_actions = lock.add_subparsers(dest="action")
    lock_status = lock_actions.add_parser("status", help="Show the current lock holder")
    _add_deployment_arg(lock_status)

    return parser


def _add_deployment_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--deployment", "-d", required=True, help="Deployment name")


def prompt_for_context(reference: str, contexts: list[str]) -> str:
    """Ask the user which kubeconfig context serves ``reference``."""
    if not contexts:
        raise NetforgeError("kubeconfig has no contexts to choose from")
    print(f"Cluster reference '{reference}' has no kubeconfig context.", file=sys.stderr)
    for index, name in enumerate(contexts, start=1):
        print(f"  {index}) {name}", file=sys.stderr)
    while True:
        answer = input(f"Context for '{reference}' [1]: ").strip()
        if not answer:
            return contexts[0]
        if answer in contexts:
            return answer
        if answer.isdigit() and 1 <= int(answer) <= len(contexts):
            return contexts[int(answer) - 1]
        print(f"'{answer}' is not one of the listed contexts", file=sys.stderr)


def build_commands(args: Namespace, argv: list[str]) -> DeploymentCommands:
    settings = get_settings()
    path = args.local_config or settings.kubernetes.local_config_path
    address_book = ClusterAddressBook.from_file(path, kubeconfig_path=args.kubeconfig)
    quiet = args.quiet or settings.quiet
    return DeploymentCommands(
        address_book,
        local_config_path=path,
        context_prompt=None if quiet else prompt_for_context,
        command_line=" ".join(["netforge", *(shlex.quote(a) for a in argv)]),
    )


# ============================================================================
# Handlers
# ============================================================================


async def create_deployment(commands: DeploymentCommands, args: Namespace) -> int:
    aliases = [alias.strip() for alias in args.nodes.split(",") if alias.strip()]
    document = await commands.create(
        args.deployment,
        args.namespace,
        args.cluster_ref,
        context=args.context,
        seed=DeploymentSeed(
            node_aliases=aliases,
            dns_base_domain=args.dns_base_domain,
            dns_consensus_node_pattern=args.dns_consensus_node_pattern,
        ),
    )
    print(f"Deployment '{args.deployment}' ready in namespace '{args.namespace}'")
    for node in document.consensus_nodes:
        print(f"  {node.node_alias} (id {node.node_id}) on {node.cluster_reference}: {node.fqdn}")
    return 0


async def destroy_deployment(commands: DeploymentCommands, args: Namespace) -> int:
    result = await commands.destroy(args.deployment)
    if result is None:
        print(f"Deployment '{args.deployment}' has no remote configuration")
        return 0
    return _report_writes(result, verb="deleted")


async def check_deployment(commands: DeploymentCommands, args: Namespace) -> int:
    report = await commands.check(args.deployment)
    _print_report(report)
    return 0 if not report.unreachable else 1


async def add_node(commands: DeploymentCommands, args: Namespace) -> int:
    result = await commands.add_node(args.deployment, args.node_alias, args.cluster_ref)
    return _report_writes(result, verb="updated")


async def remove_node(commands: DeploymentCommands, args: Namespace) -> int:
    result = await commands.remove_node(args.deployment, args.node_alias)
    return _report_writes(result, verb="updated")


async def add_cluster(commands: DeploymentCommands, args: Namespace) -> int:
    result = await commands.add_cluster(
        args.deployment,
        args.cluster_ref,
        context=args.context,
        dns_base_domain=args.dns_base_domain,
        dns_consensus_node_pattern=args.dns_consensus_node_pattern,
    )
    return _report_writes(result, verb="updated")


async def map_cluster(commands: DeploymentCommands, args: Namespace) -> int:
    commands.map_cluster(args.cluster_ref, args.context)
    print(f"Cluster reference '{args.cluster_ref}' mapped to context '{args.context}'")
    return 0


async def show_lock(commands: DeploymentCommands, args: Namespace) -> int:
    status = await commands.lock_status(args.deployment)
    if status is None:
        print(f"Deployment '{args.deployment}' is not locked")
        return 0
    holder = str(status.holder) if status.holder else status.lease.holder_identity
    state = "expired" if status.expired else "held"
    print(f"Lock '{status.lease.name}' {state} by {holder}")
    print(f"  renewed: {status.lease.last_renewal}")
    print(f"  transitions: {status.lease.transitions}")
    return 0


def _report_writes(result: ModifyResult, *, verb: str) -> int:
    for reference in result.written:
        print(f"  {reference}: {verb}")
    for reference, error in result.failed.items():
        print(f"  {reference}: FAILED ({error.message})", file=sys.stderr)
    if result.failed:
        print(
            "Some clusters were not updated; run 'netforge deployment check' to inspect",
            file=sys.stderr,
        )
        return 1
    return 0


def _print_report(report: ConsistencyReport) -> None:
    for reference, context in report.resolved_contexts.items():
        print(f"  {reference}: mapped to context '{context}'")
    for reference in report.checked:
        if reference in report.unreachable:
            print(f"  {reference}: UNREACHABLE ({report.unreachable[reference]})")
        elif reference in report.compared:
            print(f"  {reference}: consistent")
        else:
            print(f"  {reference}: reachable")


COMMAND_HANDLERS: dict[tuple[str, str], Handler] = {
    ("deployment", "create"): create_deployment,
    ("deployment", "destroy"): destroy_deployment,
    ("deployment", "check"): check_deployment,
    ("node", "add"): add_node,
    ("node", "remove"): remove_node,
    ("cluster", "add"): add_cluster,
    ("cluster", "map"): map_cluster,
    ("lock", "status"): show_lock,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.group is None:
        parser.print_help()
        return 0

    handler = COMMAND_HANDLERS.get((args.group, getattr(args, "action", None) or ""))
    if handler is None:
        parser.print_help()
        return 1

    if args.verbose:
        configure_logging(level="DEBUG")

    try:
        commands = build_commands(args, argv)
        return asyncio.run(handler(commands, args))
    except LockTimeout as exc:
        _error(f"{exc.message}. Another operation is in progress; re-run the command later.")
    except LockLost as exc:
        _error(f"{exc.message}. The operation was aborted; re-run the command.")
    except RemoteConfigMismatch as exc:
        _error(
            f"clusters '{exc.cluster_a}' and '{exc.cluster_b}' hold different "
            f"remote configurations"
        )
    except NetforgeError as exc:
        _error(exc.message)
    except KeyboardInterrupt:
        _error("interrupted")
    return 1


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
