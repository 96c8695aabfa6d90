#!/usr/bin/env python3
"""Hierarchy Tree CLI - Interactive tree browser over an in-memory data set."""

import argparse
import asyncio
import locale
import logging
from typing import List, Optional, Union

from .config import ResolvedConfig, add_config_args, load_config
from .in_memory import InMemoryDataSource
from .node_key import InstanceKey
from .provider import UNBOUNDED, DefinitionHierarchyProvider
from .search import CustomNodeIdentifier, NodeIdentifier, SearchPath, SearchPathOptions
from .tree_actions import TreeActions
from .tree_model import SelectionChangeType, TreeViewNode

logger = logging.getLogger(__name__)


def print_help() -> None:
    """Print available commands."""
    print("\n=== Hierarchy Tree CLI ===")
    print("Available commands:")
    print("  tree                           - Print the loaded tree")
    print("  expand <node>                  - Expand a node")
    print("  collapse <node>                - Collapse a node")
    print("  limit <node|root> <n|unbounded> - Set hierarchy level size limit")
    print("  filter <node|root> <text|clear> - Filter child instances by label")
    print("  search <path> [path...]        - Show only nodes on the given paths")
    print("  search clear                   - Show the whole hierarchy again")
    print("  reload [discard]               - Reload the tree")
    print("  select <node> [node...]        - Select nodes")
    print("  status                         - Show engine status")
    print("  help                           - Show this help")
    print("  quit                           - Exit")
    print("\nNodes are referred to by the numbers printed by 'tree' or by full node id.")
    print("\nExamples:")
    print("  expand 3                       - Expand node [3]")
    print("  limit root 100                 - Load at most 100 root nodes")
    print("  search folder/BisCore.Element:0x1 - Reveal instance 0x1 under custom node 'folder'")


def trim(s: str) -> str:
    """Trim whitespace from string."""
    return s.strip()


def print_tree(forest: List[TreeViewNode]) -> List[str]:
    """Print a tree projection.

    Returns:
        Node ids in printed order, indexed by the printed numbers
    """
    handles: List[str] = []

    def print_level(nodes: List[TreeViewNode], depth: int) -> None:
        for node in nodes:
            indent = "  " * depth
            if node.is_placeholder:
                print(f"{indent}    ...")
                continue
            if node.info_type is not None:
                print(f"{indent}    ! {node.label} ({node.info_type})")
                continue
            handles.append(node.id)
            if node.children:
                marker = "-" if node.is_expanded else "+"
            else:
                marker = " "
            selected = " *" if node.is_selected else ""
            print(f"{indent}[{len(handles) - 1}] {marker} {node.label}{selected}")
            if node.is_expanded:
                print_level(node.children, depth + 1)

    if not forest:
        print("(empty tree)")
    print_level(forest, 0)
    return handles


def parse_identifier(token: str) -> NodeIdentifier:
    """Parse ``Schema.Class:id`` into an instance key, anything else into a custom node identifier."""
    if ":" in token:
        class_name, instance_id = token.rsplit(":", 1)
        return InstanceKey(class_name=class_name, id=instance_id)
    return CustomNodeIdentifier(key=token)


def parse_search_path(token: str) -> SearchPath:
    return SearchPath(
        path=[parse_identifier(part) for part in token.split("/") if part],
        options=SearchPathOptions(reveal=True),
    )


def parse_limit(token: str) -> Union[int, str]:
    if token.lower() == UNBOUNDED:
        return UNBOUNDED
    limit = int(token)
    if limit < 1:
        raise ValueError("Limit must be a positive integer")
    return limit


class TreeSession:
    """State of an interactive session.

    Usage:
        session = TreeSession(provider, TreeActions(provider))
        await session.actions.reload_tree()
        await handle_command("expand 0", session)
    """

    def __init__(self, provider: DefinitionHierarchyProvider, actions: TreeActions):
        self.provider = provider
        self.actions = actions
        self.handles: List[str] = []

    def resolve_node(self, token: str) -> Optional[str]:
        """Resolve a printed number or a full node id into a node id."""
        if token.isdigit():
            index = int(token)
            if index < len(self.handles):
                return self.handles[index]
            return None
        return token if token in self.actions.model else None


def create_session(config: ResolvedConfig) -> TreeSession:
    source = InMemoryDataSource.from_config(config)
    provider = source.create_provider(config.engine)
    actions = TreeActions(provider, concurrency=config.engine.auto_expand_concurrency)
    return TreeSession(provider, actions)


def print_status(session: TreeSession) -> None:
    """Print engine status."""
    provider_stats = session.provider.get_stats()
    actions_stats = session.actions.get_stats()
    print("\n=== Engine Status ===")
    print(f"Loaded nodes: {actions_stats['nodes']}")
    print(f"Pending requests: {actions_stats['pending_requests']}")
    print(f"Levels requested: {provider_stats['levels_requested']}")
    print(f"Levels read: {provider_stats['levels_read']}")
    print(f"Cached levels: {provider_stats['cached_levels']}")
    print(f"Cache hits: {provider_stats['cache_hits']}")
    print(f"Search active: {session.provider.search_paths is not None}")
    print("Cache policy: LRU")


async def handle_command(line: str, session: TreeSession) -> bool:
    """Run a single command line.

    Returns:
        False when the session should end
    """
    parts = line.split()
    if not parts:
        return True
    command = parts[0].lower()
    actions = session.actions

    if command in ("quit", "exit"):
        print("Goodbye!")
        return False

    if command == "help":
        print_help()
        return True

    if command == "tree":
        session.handles = print_tree(actions.get_tree())
        return True

    if command in ("expand", "collapse"):
        if len(parts) < 2:
            print(f"Usage: {command} <node>")
            return True
        node_id = session.resolve_node(parts[1])
        if node_id is None:
            print(f"Unknown node: {parts[1]}")
            return True
        await actions.expand_node(node_id, command == "expand")
        session.handles = print_tree(actions.get_tree())
        return True

    if command in ("limit", "filter"):
        if len(parts) < 3:
            print(f"Usage: {command} <node|root> <value>")
            return True
        if parts[1].lower() == "root":
            node_id = None
        else:
            node_id = session.resolve_node(parts[1])
            if node_id is None:
                print(f"Unknown node: {parts[1]}")
                return True
        if command == "limit":
            try:
                limit = parse_limit(parts[2])
            except ValueError:
                print("Invalid limit, expected a positive number or 'unbounded'")
                return True
            await actions.set_hierarchy_limit(node_id, limit)
        else:
            text = " ".join(parts[2:])
            await actions.set_instance_filter(node_id, None if text.lower() == "clear" else text)
        session.handles = print_tree(actions.get_tree())
        return True

    if command == "search":
        if len(parts) < 2:
            print("Usage: search <path> [path...] | search clear")
            return True
        if parts[1].lower() == "clear":
            session.provider.set_search_paths(None)
        else:
            session.provider.set_search_paths([parse_search_path(token) for token in parts[1:]])
        await actions.reload_tree()
        session.handles = print_tree(actions.get_tree())
        return True

    if command == "reload":
        discard_state = len(parts) > 1 and parts[1].lower() == "discard"
        session.provider.notify_data_source_changed()
        await actions.reload_tree(discard_state=discard_state)
        session.handles = print_tree(actions.get_tree())
        return True

    if command == "select":
        if len(parts) < 2:
            print("Usage: select <node> [node...]")
            return True
        node_ids = [session.resolve_node(token) for token in parts[1:]]
        if None in node_ids:
            print("Unknown node in selection")
            return True
        actions.select_nodes(node_ids, SelectionChangeType.REPLACE)
        print(f"Selected {len(node_ids)} node(s)")
        return True

    if command == "status":
        print_status(session)
        return True

    print(f"Unknown command: {command}")
    print("Type 'help' for available commands.")
    return True


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Hierarchy Tree - interactive hierarchy browser",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m hierarchy_tree.cli --config tree.yaml               # Browse a data set
  python -m hierarchy_tree.cli --config tree.yaml --validate    # Validate config only
  python -m hierarchy_tree.cli --config tree.yaml --env dev     # Use dev environment
        """
    )

    add_config_args(parser)
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    return parser.parse_args(argv)


async def run_cli_with_config(args) -> None:
    """Run CLI with config loading."""
    print("Hierarchy Tree - interactive hierarchy browser")
    print("==============================================\n")

    if not args.config:
        print("Error: a configuration file is required (--config)")
        return

    try:
        config = load_config(args.config, args.env)
    except FileNotFoundError as e:
        print(f"Error: Configuration file not found: {e}")
        return
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}")
        return

    if args.validate:
        print(f"✓ Configuration valid: {args.config}")
        print(f"  Environment: {config.environment}")
        print(f"  Classes: {len(config.classes)}")
        print(f"  Custom nodes: {len(config.custom_nodes)}")
        print(f"  Instances: {len(config.instances)}")
        return

    session = create_session(config)
    await session.actions.reload_tree()
    print("Type 'help' for available commands.\n")
    session.handles = print_tree(session.actions.get_tree())

    while True:
        try:
            line = trim(input("> "))
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not await handle_command(line, session):
            break

    session.actions.dispose()


def main() -> None:
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # labels sort with the user's collation
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as e:
        logger.warning(f"[CLI] Keeping default collation: {e}")
    asyncio.run(run_cli_with_config(args))


if __name__ == "__main__":
    main()
