"""
Fetch Client - Paginated listings and recursive block trees

Presents "all pages of X" and "full block tree of Y" over the concurrency
controller. Cursor pagination always asks for the maximum page size. Block
trees are fetched level by level so every level's children requests go to the
controller as one bulk submission.
"""
from typing import Dict, List, Optional, Tuple

from ...utils.logger import get_logger
from .cache import MISS, SessionCache, make_cache_key
from .concurrency import ConcurrencyController, ErrorKind, Request, RequestError
from .errors import BlockTreeError, FetchError
from .remote_objects import BlockNode, BlockTypeRegistry, RemoteRecord, block_registry

logger = get_logger('fetch_client')


def _malformed(path: str, message: str) -> FetchError:
    error = RequestError(kind=ErrorKind.MALFORMED, message=message)
    return FetchError(f"{path}: {error}", error)


class NotionFetchClient:
    """Read-side client for the remote document API.

    Example:
        >>> client = NotionFetchClient(controller, cache, api_key='secret_xxx')
        >>> records = client.list_records('db-id')
        >>> blocks = client.get_block_tree(records[0].id, max_depth=3)
    """

    API_BASE = 'https://api.notion.com/v1/'
    NOTION_VERSION = '2022-06-28'
    PAGE_SIZE = 100
    DEFAULT_MAX_DEPTH = 3

    def __init__(
        self,
        controller: ConcurrencyController,
        cache: Optional[SessionCache] = None,
        api_key: str = '',
        api_base: str = API_BASE,
        notion_version: str = NOTION_VERSION,
        max_depth: int = DEFAULT_MAX_DEPTH,
        registry: BlockTypeRegistry = block_registry
    ):
        self.controller = controller
        self.cache = cache if cache is not None else SessionCache()
        self.api_key = api_key
        self.api_base = api_base if api_base.endswith('/') else api_base + '/'
        self.notion_version = notion_version
        self.max_depth = max_depth
        self.registry = registry

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Notion-Version': self.notion_version,
            'Content-Type': 'application/json',
        }

    def _url(self, path: str) -> str:
        return self.api_base + path.lstrip('/')

    def _call(self, method: str, path: str, **kwargs):
        """Execute one request; raise FetchError on failure."""
        result = self.controller.execute(
            Request(method, self._url(path), headers=self._headers(), **kwargs)
        )
        if isinstance(result, RequestError):
            raise FetchError(f"{method} {path} failed: {result}", result)
        return result.data

    # ==================== Records ====================

    def list_records(self, database_id: str, filter: Optional[Dict] = None,
                     sorts: Optional[List[Dict]] = None) -> List[RemoteRecord]:
        """List every page of a database, following the pagination cursor.

        Args:
            database_id: Remote database id
            filter: Optional server-side filter (e.g. last_edited_time after T)
            sorts: Optional server-side sort

        Returns:
            Records in server order

        Raises:
            FetchError: If any page request fails or returns an undecodable page
        """
        key = make_cache_key('list_records', database_id, filter, {'sorts': sorts})
        cached = self.cache.get(key)
        if cached is not MISS:
            logger.debug(f"[FetchClient] Cache hit for listing of {database_id}")
            return list(cached)

        records: List[RemoteRecord] = []
        cursor = None
        seen_cursors = set()
        pages = 0
        while True:
            body = {'page_size': self.PAGE_SIZE}
            if cursor:
                body['start_cursor'] = cursor
            if filter:
                body['filter'] = filter
            if sorts:
                body['sorts'] = sorts

            path = f'databases/{database_id}/query'
            data = self._call('POST', path, json=body)
            pages += 1
            if not isinstance(data, dict):
                raise _malformed(path, 'listing page is not an object')
            records.extend(self._decode_records(path, data.get('results') or []))

            cursor = data.get('next_cursor')
            if not data.get('has_more') or not cursor:
                break
            if cursor in seen_cursors:
                raise _malformed(path, f"cursor {cursor!r} repeated")
            seen_cursors.add(cursor)

        logger.info(f"[FetchClient] Listed {len(records)} records from {database_id} in {pages} page(s)")
        self.cache.set(key, tuple(records))
        return records

    @staticmethod
    def _decode_records(path: str, items: List) -> List[RemoteRecord]:
        records = []
        for item in items:
            try:
                records.append(RemoteRecord.from_api(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise _malformed(path, f"undecodable record {e!r}") from e
        return records

    def list_record_ids(self, database_id: str) -> List[str]:
        """Ids of every record in the database (unfiltered listing)."""
        return [record.id for record in self.list_records(database_id)]

    def invalidate_database(self, database_id: str) -> int:
        """Drop every cached listing of a database."""
        return self.cache.invalidate(scope=f'list_records:{database_id}:')

    def get_page(self, page_id: str) -> RemoteRecord:
        """Fetch one page's metadata and properties."""
        path = f'pages/{page_id}'
        return self._decode_records(path, [self._call('GET', path)])[0]

    def check_connection(self) -> bool:
        """Whether the API key is accepted by the remote API."""
        try:
            self._call('GET', 'users/me')
            return True
        except FetchError as e:
            logger.warning(f"[FetchClient] Connection check failed: {e}")
            return False

    # ==================== Block trees ====================

    def get_block_tree(self, root_id: str, max_depth: Optional[int] = None,
                       version: Optional[str] = None) -> List[BlockNode]:
        """Fetch the block tree under ``root_id``.

        The root's direct children are depth 1. A node at depth ``d`` has its
        children fetched only when ``d < max_depth``, it reports
        ``has_children``, and its type is recursable. A 404 on a child fetch
        leaves that node with no children.

        Args:
            root_id: Page or block id
            max_depth: Depth bound (defaults to the client's ``max_depth``)
            version: Cache discriminator, typically the record's last_edited_time

        Returns:
            Top-level BlockNodes with children populated

        Raises:
            FetchError: If the root's children cannot be fetched
            BlockTreeError: If a descendant branch failed with a non-404 error,
                after every sibling branch has been fetched
        """
        if max_depth is None:
            max_depth = self.max_depth
        if max_depth < 1:
            return []

        key = make_cache_key('block_tree', root_id, detail={'max_depth': max_depth, 'version': version})
        cached = self.cache.get(key)
        if cached is not MISS:
            return list(cached)

        raw_children, error = self._fetch_children([root_id])[root_id]
        if error is not None:
            raise FetchError(f"Failed to fetch children of {root_id}: {error}", error)

        # Visited ids are scoped to this call so duplicates and cycles are dropped deterministically
        visited = {root_id}
        top_level = self._build_nodes(raw_children, 1, visited)
        frontier = [node for node in top_level if self._should_expand(node, max_depth)]
        failures: List[Tuple[str, RequestError]] = []

        while frontier:
            fetched = self._fetch_children([node.id for node in frontier])
            next_frontier = []
            for node in frontier:
                raw, error = fetched[node.id]
                if error is not None:
                    if error.is_not_found:
                        logger.debug(f"[FetchClient] Children of {node.id} not found, treating as empty")
                        node.set_children([])
                    else:
                        failures.append((node.id, error))
                    continue
                children = self._build_nodes(raw, node.depth + 1, visited)
                node.set_children(children)
                next_frontier.extend(child for child in children if self._should_expand(child, max_depth))
            frontier = next_frontier

        if failures:
            raise BlockTreeError(root_id, failures, top_level)

        self.cache.set(key, tuple(top_level))
        return top_level

    def _should_expand(self, node: BlockNode, max_depth: int) -> bool:
        return node.has_children and node.depth < max_depth and self.registry.is_recursable(node.type)

    @staticmethod
    def _build_nodes(raw_blocks: List[Dict], depth: int, visited: set) -> List[BlockNode]:
        nodes = []
        for raw in raw_blocks:
            block_id = raw.get('id')
            if not block_id or block_id in visited:
                continue
            visited.add(block_id)
            nodes.append(BlockNode.from_api(raw, depth=depth))
        return nodes

    def _children_request(self, block_id: str, cursor: Optional[str]) -> Request:
        params = {'page_size': self.PAGE_SIZE}
        if cursor:
            params['start_cursor'] = cursor
        return Request(
            'GET',
            self._url(f'blocks/{block_id}/children'),
            params=params,
            headers=self._headers(),
            tag=block_id,
        )

    def _fetch_children(self, block_ids: List[str]) -> Dict[str, Tuple[List[Dict], Optional[RequestError]]]:
        """Fetch all children pages of several blocks, one bulk submission per page round.

        Returns:
            Mapping ``block_id -> (raw children, error or None)``
        """
        outcome: Dict[str, Tuple[List[Dict], Optional[RequestError]]] = {}
        collected: Dict[str, List[Dict]] = {block_id: [] for block_id in block_ids}
        pending: Dict[str, Optional[str]] = {block_id: None for block_id in block_ids}
        seen_cursors: Dict[str, set] = {block_id: set() for block_id in block_ids}

        while pending:
            ids = list(pending)
            results = self.controller.submit([self._children_request(bid, pending[bid]) for bid in ids])
            next_pending: Dict[str, Optional[str]] = {}
            for block_id, result in zip(ids, results):
                if isinstance(result, RequestError):
                    outcome[block_id] = ([], result)
                    continue
                data = result.data or {}
                collected[block_id].extend(data.get('results', []))
                cursor = data.get('next_cursor')
                if data.get('has_more') and cursor in seen_cursors[block_id]:
                    outcome[block_id] = ([], RequestError(
                        kind=ErrorKind.MALFORMED,
                        message=f"children cursor {cursor!r} of {block_id} repeated",
                    ))
                elif data.get('has_more') and cursor:
                    seen_cursors[block_id].add(cursor)
                    next_pending[block_id] = cursor
                else:
                    outcome[block_id] = (collected[block_id], None)
            pending = next_pending

        return outcome
