"""CLI entry point for k8sfs: a read-only filesystem view of a Kubernetes cluster."""

import argparse
import logging
import os
import sys

from backend import BackendError, parse_path
from cluster import SharedConnection, bootstrap_connection
from tree import FailurePolicy, KubeTree


def add_cluster_options(p: argparse.ArgumentParser):
    p.add_argument("--kubeconfig", help="kubeconfig file (default: $KUBECONFIG or ~/.kube/config)")
    p.add_argument("--context", help="kubeconfig context to use")
    p.add_argument("--in-cluster", action="store_true",
                   help="Use the pod's service account instead of a kubeconfig")
    p.add_argument("--policy", choices=[policy.value for policy in FailurePolicy],
                   default=FailurePolicy.ABORT.value,
                   help="What a failed resource listing does: abort the mount, "
                        "or isolate it in its own directory")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8sfs",
        description="k8sfs: read-only filesystem view of a Kubernetes cluster",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging and FUSE tracing")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("mount", help="Mount the cluster tree and block until unmounted")
    p.add_argument("mountpoint", help="Directory to mount on")
    add_cluster_options(p)
    p.add_argument("--prefetch", action="store_true",
                   help="Populate the whole tree before mounting")
    p.add_argument("--allow-other", action="store_true",
                   help="Let other users access the mount")

    p = sub.add_parser("dump", help="Print every path in the tree without mounting")
    p.add_argument("path", nargs="?", default="/", help="Subtree to print")
    add_cluster_options(p)

    return parser


def build_tree(args) -> KubeTree:
    """Make a tree whose connection is built from the command-line options on first use."""
    connection = SharedConnection(
        lambda: bootstrap_connection(args.kubeconfig, args.context, args.in_cluster)
    )
    return KubeTree(connection, FailurePolicy(args.policy))


def run_dump(tree: KubeTree, path: str, out=None):
    out = out or sys.stdout
    for segments, info in tree.walk(parse_path(path)):
        line = "/" + "/".join(segments)
        if info.is_dir and segments:
            line += "/"
        print(line, file=out)


def run_mount(tree: KubeTree, args):
    from fusefs import mount

    # Connect before mounting so a bad kubeconfig never leaves a mount behind
    tree.connection.get()
    if args.prefetch:
        count = tree.prefetch()
        logging.getLogger(__name__).info("Prefetched %d nodes", count)

    print(f"Serving cluster on {args.mountpoint}")
    print("Unmount (fusermount -u) or press Ctrl+C to stop.")
    try:
        mount(tree, args.mountpoint, debug=args.debug, allow_other=args.allow_other)
    except RuntimeError as e:
        print(f"Error: mount failed: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "mount" and not os.path.isdir(args.mountpoint):
        print(f"Error: {args.mountpoint} is not a directory", file=sys.stderr)
        sys.exit(1)

    tree = build_tree(args)
    try:
        if args.command == "dump":
            run_dump(tree, args.path)
        else:
            run_mount(tree, args)
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
