#!/usr/bin/env python3
"""Prose MCP Server: project memory tools via Model Context Protocol.

Exposes the evolving project memory as MCP tools over stdio transport.

Usage:
    python3 mcp_server.py                       # stdio transport (default)
    PROSE_PROJECT=my-app python3 mcp_server.py  # default project for tools

Environment variables:
    PROSE_PROJECT         Default project key when a tool call omits one
    PROSE_HOME            Override prose home directory (default: ~/.claude-prose/)
    PROSE_LOG_SOURCE_DIR  Override session-log directory
    MOCK_EMBEDDINGS       Use deterministic mock embeddings
"""

import os
import sys
import logging

# MCP uses stdout for JSON-RPC: redirect stdout to stderr before any imports
# to catch stray prints from config loading and providers.
_real_stdout = sys.stdout
sys.stdout = sys.stderr

os.environ["PROSE_QUIET"] = "1"

# Ensure plugin root is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from mcp.server.fastmcp import FastMCP

from core.interface import api

DEFAULT_PROJECT = os.environ.get("PROSE_PROJECT", "")
logger = logging.getLogger(__name__)

mcp = FastMCP("prose", instructions=(
    "Prose keeps an evolving semantic memory of a project (decisions, insights, "
    "gotchas, current focus, narrative) distilled from development-session logs. "
    "Use prose_search to recall past decisions and learnings, prose_evolve to fold "
    "new sessions into memory, prose_add to record a fact directly, prose_design to "
    "submit authoritative corrections, prose_index_source to index source code, and "
    "prose_stats for an overview."
))


def _project(project: str) -> str:
    name = (project or DEFAULT_PROJECT).strip()
    if not name:
        raise ValueError("project is required (or set PROSE_PROJECT)")
    return name


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
def prose_search(query: str, project: str = "", limit: int = 10, include_code: bool = False) -> dict:
    """Search project memory.

    Args:
        query: What to look for. Three or more words enable semantic matching.
        project: Project key; empty searches every project (or PROSE_PROJECT).
        limit: Maximum results (1-50).
        include_code: Also search indexed source code.

    Returns:
        Dict with 'results' (type, primary, secondary, score, source) and 'warnings'.
    """
    corpora = ["snapshots", "current"] + (["code"] if include_code else [])
    response = api.search(
        query,
        corpora=corpora,
        limit=max(1, min(int(limit), 50)),
        project=(project or DEFAULT_PROJECT or None),
    )
    return {
        "query": query,
        "mode": response.mode,
        "results": [r.to_dict() for r in response],
        "warnings": response.warnings,
    }


@mcp.tool()
def prose_evolve(project: str = "", force: bool = False) -> dict:
    """Process new session logs into memory (vertical + horizontal evolution).

    Args:
        project: Project key (defaults to PROSE_PROJECT).
        force: Re-process every session from the start.
    """
    return api.run_evolution(_project(project), force=force).to_dict()


@mcp.tool()
def prose_add(kind: str, content: str, project: str = "", why: str = "",
              solution: str = "", context: str = "") -> dict:
    """Add an entry straight to the current memory.

    Args:
        kind: "decision", "insight", "gotcha" or "focus".
        content: The decision / learning / issue / goal text.
        project: Project key (defaults to PROSE_PROJECT).
        why: Rationale for a decision.
        solution: Fix for a gotcha.
        context: Context for an insight.
    """
    return api.add_fragment(
        _project(project), kind, content,
        why=why or None, solution=solution or None, context=context or None,
    )


@mcp.tool()
def prose_stats(project: str = "") -> dict:
    """Memory statistics for one project, or all projects when empty."""
    return api.memory_stats(project or DEFAULT_PROJECT or None)


@mcp.tool()
def prose_design(corrections: list, project: str = "") -> dict:
    """Record a design session of authoritative corrections.

    Args:
        corrections: Either plain strings (designer statements) or
            {"role": "user"|"assistant", "content": str} objects.
        project: Project key (defaults to PROSE_PROJECT).

    Returns:
        Dict with the saved path. Run prose_evolve to integrate it.
    """
    messages = [
        c if isinstance(c, dict) else {"role": "user", "content": str(c)}
        for c in corrections or []
    ]
    path = api.record_design_session(_project(project), messages)
    return {"saved": path}


@mcp.tool()
def prose_index_source(root: str, project: str = "") -> dict:
    """Index a source tree for code search.

    Args:
        root: Directory to walk.
        project: Project key (defaults to PROSE_PROJECT).
    """
    return api.index_source(_project(project), root)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.stdout = _real_stdout  # Restore for MCP JSON-RPC protocol
    mcp.run(transport="stdio")
