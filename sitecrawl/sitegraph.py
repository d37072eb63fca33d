"""
Incremental parent/child graph of discovered URLs.

Nodes live in a flat table keyed by id, with a second index from normalized
URL to id. A node keeps its id for life and is updated in place; children
are only ever wired to nodes already in the table.
"""

from __future__ import annotations

from typing import Optional

from .events import CrawlErrorEvent, CrawlListener, FileDiscovered
from .models import (
    DiscoveredLink,
    LinkType,
    NodeStatus,
    QueuedURL,
    ScrapedPage,
    SiteMapStats,
    SiteNode,
    TreeNode,
    UrlCategory,
    utcnow,
)
from .urls import classify, normalize


class SiteGraph:
    def __init__(self) -> None:
        self._nodes: dict[str, SiteNode] = {}
        self._by_url: dict[str, str] = {}
        self._root_id: Optional[str] = None

    @staticmethod
    def _key(url: str) -> str:
        return normalize(url) or url

    def add_node(
        self,
        url: str,
        parent_url: Optional[str] = None,
        depth: int = 0,
        *,
        status: Optional[NodeStatus] = None,
        file_type: Optional[UrlCategory] = None,
        title: Optional[str] = None,
        status_code: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> SiteNode:
        key = self._key(url)
        parent_id = self._by_url.get(self._key(parent_url)) if parent_url else None

        node_id = self._by_url.get(key)
        if node_id is not None:
            node = self._nodes[node_id]
            if status is not None:
                node.status = status
                if status is NodeStatus.FETCHED:
                    node.fetched_at = utcnow()
            if file_type is not None:
                node.file_type = file_type
            if title is not None:
                node.title = title
            if status_code is not None:
                node.status_code = status_code
            if content_type is not None:
                node.content_type = content_type
            if node.parent_id is None and node.id != self._root_id and parent_id and parent_id != node.id:
                self._wire(node, parent_id)
                node.depth = depth
            return node.copy()

        node = SiteNode(
            url=url,
            normalized_url=key,
            depth=depth,
            status=status or NodeStatus.DISCOVERED,
            file_type=file_type or self._file_type(url, content_type),
            title=title,
            status_code=status_code,
            content_type=content_type,
        )
        if node.status is NodeStatus.FETCHED:
            node.fetched_at = utcnow()
        self._nodes[node.id] = node
        self._by_url[key] = node.id
        if parent_id is not None:
            self._wire(node, parent_id)
        elif self._root_id is None:
            self._root_id = node.id
        return node.copy()

    def _wire(self, node: SiteNode, parent_id: str) -> None:
        parent = self._nodes[parent_id]
        node.parent_id = parent_id
        if node.id not in parent.child_ids:
            parent.child_ids.append(node.id)

    @staticmethod
    def _file_type(url: str, content_type: Optional[str]) -> UrlCategory:
        category = classify(url, content_type)
        return UrlCategory.PAGE if category is UrlCategory.API else category

    def _set_status(self, url: str, status: NodeStatus, status_code: Optional[int] = None) -> Optional[SiteNode]:
        node_id = self._by_url.get(self._key(url))
        if node_id is None:
            return None
        node = self._nodes[node_id]
        node.status = status
        if status_code is not None:
            node.status_code = status_code
        return node.copy()

    def mark_fetched(
        self, url: str, status_code: int = 200, title: Optional[str] = None, content_type: Optional[str] = None
    ) -> Optional[SiteNode]:
        node_id = self._by_url.get(self._key(url))
        if node_id is None:
            return None
        node = self._nodes[node_id]
        node.status = NodeStatus.FETCHED
        node.status_code = status_code
        node.fetched_at = utcnow()
        if title is not None:
            node.title = title
        if content_type is not None:
            node.content_type = content_type
        return node.copy()

    def mark_failed(self, url: str, status_code: Optional[int] = None) -> Optional[SiteNode]:
        return self._set_status(url, NodeStatus.FAILED, status_code)

    def mark_blocked(self, url: str) -> Optional[SiteNode]:
        return self._set_status(url, NodeStatus.BLOCKED)

    def mark_skipped(self, url: str) -> Optional[SiteNode]:
        return self._set_status(url, NodeStatus.SKIPPED)

    # ------------------------------ Queries -------------------------------- #

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def root(self) -> Optional[SiteNode]:
        return self._nodes[self._root_id].copy() if self._root_id else None

    def node(self, node_id: str) -> Optional[SiteNode]:
        node = self._nodes.get(node_id)
        return node.copy() if node else None

    def node_for_url(self, url: str) -> Optional[SiteNode]:
        node_id = self._by_url.get(self._key(url))
        return self._nodes[node_id].copy() if node_id else None

    def nodes(self) -> list[SiteNode]:
        return [n.copy() for n in self._nodes.values()]

    def children(self, node_id: str) -> list[SiteNode]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[c].copy() for c in node.child_ids if c in self._nodes]

    def parent(self, node_id: str) -> Optional[SiteNode]:
        node = self._nodes.get(node_id)
        if node is None or node.parent_id is None:
            return None
        return self._nodes[node.parent_id].copy()

    def nodes_at_depth(self, depth: int) -> list[SiteNode]:
        return [n.copy() for n in self._nodes.values() if n.depth == depth]

    def tree(self) -> Optional[TreeNode]:
        if self._root_id is None:
            return None
        seen: set[str] = set()

        def build(node_id: str) -> TreeNode:
            seen.add(node_id)
            node = self._nodes[node_id]
            kids = tuple(build(c) for c in node.child_ids if c in self._nodes and c not in seen)
            return TreeNode(node.copy(), kids)

        return build(self._root_id)

    def stats(self) -> SiteMapStats:
        nodes = list(self._nodes.values())
        return SiteMapStats(
            total_nodes=len(nodes),
            pages=sum(1 for n in nodes if n.file_type is UrlCategory.PAGE),
            resources=sum(1 for n in nodes if n.file_type is not UrlCategory.PAGE),
            max_depth=max((n.depth for n in nodes), default=0),
            orphans=sum(1 for n in nodes if n.parent_id is None and n.id != self._root_id),
            broken=sum(1 for n in nodes if n.status is NodeStatus.FAILED),
            external=sum(1 for n in nodes if n.status is NodeStatus.EXTERNAL),
        )

    def clear(self) -> None:
        self._nodes.clear()
        self._by_url.clear()
        self._root_id = None


class SiteGraphListener(CrawlListener):
    """Feeds crawl events into a ``SiteGraph``."""

    def __init__(self, graph: Optional[SiteGraph] = None) -> None:
        self.graph = graph or SiteGraph()

    def on_url_queued(self, queued: QueuedURL) -> None:
        self.graph.add_node(queued.url, queued.parent_url, queued.depth, status=NodeStatus.QUEUED)

    def on_page_scraped(self, page: ScrapedPage) -> None:
        self.graph.add_node(
            page.url,
            page.parent_url,
            page.depth,
            status=NodeStatus.FETCHED,
            title=page.title,
            status_code=page.status_code,
            content_type=page.content_type,
        )

    def on_link_discovered(self, link: DiscoveredLink, source_url: str, depth: int) -> None:
        if link.link_type is LinkType.EXTERNAL and not link.was_followed:
            self.graph.add_node(link.url, source_url, depth, status=NodeStatus.EXTERNAL)

    def on_file_discovered(self, event: FileDiscovered) -> None:
        self.graph.add_node(event.url, event.source_page_url, event.depth, file_type=event.category)

    def on_url_skipped(self, url: str, reason: str) -> None:
        if reason == "robots":
            self.graph.mark_blocked(url)
        else:
            self.graph.mark_skipped(url)

    def on_error(self, event: CrawlErrorEvent) -> None:
        self.graph.mark_failed(event.url, event.status_code)
