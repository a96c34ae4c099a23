"""
Remote Objects - Records, block nodes and the block type registry

RemoteRecord and BlockNode are decoded from the remote API's JSON and treated
as read-only for the rest of a run. Block-specific behavior (whether to recurse,
how to extract text or media) is looked up in a registry keyed by the block's
type tag instead of being dispatched by name.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ...utils.timeutils import parse_iso

# Notion-hosted files carry expiring URLs and must be copied locally
HOSTED_FILE_TYPE = 'file'


@dataclass(frozen=True)
class RemoteRecord:
    """A page of the remote database."""
    id: str
    last_edited_time: Optional[datetime]
    properties: Dict[str, Any] = field(default_factory=dict)
    has_children: bool = True
    created_time: Optional[datetime] = None
    url: Optional[str] = None
    archived: bool = False
    cover: Optional[Dict[str, Any]] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'RemoteRecord':
        return cls(
            id=payload['id'],
            last_edited_time=parse_iso(payload.get('last_edited_time')),
            properties=payload.get('properties') or {},
            has_children=payload.get('has_children', True),
            created_time=parse_iso(payload.get('created_time')),
            url=payload.get('url'),
            archived=bool(payload.get('archived') or payload.get('in_trash')),
            cover=payload.get('cover'),
        )

    @property
    def title(self) -> str:
        """Plain text of the record's title property, or an empty string."""
        for prop in self.properties.values():
            if isinstance(prop, dict) and prop.get('type') == 'title':
                return rich_text_to_plain(prop.get('title'))
        return ''

    @property
    def cover_url(self) -> Optional[str]:
        return file_object_url(self.cover)

    @property
    def cover_is_hosted(self) -> bool:
        return bool(self.cover) and self.cover.get('type') == HOSTED_FILE_TYPE


@dataclass
class BlockNode:
    """A content block; ``children`` is only ever populated when ``has_children``."""
    id: str
    type: str
    has_children: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)
    depth: int = 1
    children: List['BlockNode'] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Dict[str, Any], depth: int = 1) -> 'BlockNode':
        block_type = payload.get('type') or 'unsupported'
        return cls(
            id=payload['id'],
            type=block_type,
            has_children=bool(payload.get('has_children')),
            payload=payload.get(block_type) or {},
            depth=depth,
        )

    def set_children(self, children: List['BlockNode']) -> None:
        if children and not self.has_children:
            raise ValueError(f"Block {self.id} has no children but {len(children)} were attached")
        self.children = list(children)

    @property
    def handler(self) -> 'BlockHandler':
        return block_registry.get(self.type)

    def walk(self):
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


def rich_text_to_plain(rich_text: Optional[List[Dict[str, Any]]]) -> str:
    if not rich_text:
        return ''
    return ''.join(part.get('plain_text') or part.get('text', {}).get('content', '') for part in rich_text)


def file_object_url(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    """URL of a file object (``{"type": "file"|"external", ...}``)."""
    if not obj:
        return None
    kind = obj.get('type')
    if kind in ('file', 'external'):
        return (obj.get(kind) or {}).get('url')
    return None


# ==================== Block type registry ====================

@dataclass(frozen=True)
class BlockHandler:
    """Behavior of one block type.

    Attributes:
        type: Type tag (e.g. ``paragraph``)
        recurse: Whether children may be fetched; False for references to
            other objects whose children endpoint is guaranteed to fail
        render: Function ``(node, inner_text) -> str`` used by the default renderer
        media: Whether the block references a file object
    """
    type: str
    recurse: bool = True
    render: Optional[Callable[['BlockNode', str], str]] = None
    media: bool = False


def _text_of(node: BlockNode) -> str:
    return rich_text_to_plain(node.payload.get('rich_text'))


def _with_children(text: str, inner: str) -> str:
    return f"{text}\n{inner}" if inner else text


def _render_paragraph(node, inner):
    return _with_children(_text_of(node), inner)


def _render_heading(level):
    def render(node, inner):
        return _with_children(f"{'#' * level} {_text_of(node)}", inner)
    return render


def _render_bulleted(node, inner):
    return _with_children(f"- {_text_of(node)}", _indent(inner))


def _render_numbered(node, inner):
    return _with_children(f"1. {_text_of(node)}", _indent(inner))


def _render_todo(node, inner):
    mark = 'x' if node.payload.get('checked') else ' '
    return _with_children(f"- [{mark}] {_text_of(node)}", _indent(inner))


def _render_quote(node, inner):
    return '\n'.join(f"> {line}" for line in _with_children(_text_of(node), inner).splitlines())


def _render_code(node, inner):
    language = node.payload.get('language') or ''
    return f"```{language}\n{_text_of(node)}\n```"


def _render_media(node, inner):
    url = file_object_url(node.payload) or ''
    caption = rich_text_to_plain(node.payload.get('caption'))
    if node.type == 'image':
        return f"![{caption}]({url})"
    return f"[{caption or node.type}]({url})"


def _render_divider(node, inner):
    return '---'


def _render_table_row(node, inner):
    cells = node.payload.get('cells') or []
    return '| ' + ' | '.join(rich_text_to_plain(cell) for cell in cells) + ' |'


def _render_container(node, inner):
    return inner


def _render_placeholder(node, inner):
    if node.type == 'child_page':
        return f"[page: {node.payload.get('title', '')}]"
    if node.type == 'child_database':
        return f"[database: {node.payload.get('title', '')}]"
    if node.type == 'link_preview':
        return f"<{node.payload.get('url', '')}>"
    return ''


def _indent(text: str) -> str:
    return '\n'.join(f"  {line}" for line in text.splitlines()) if text else ''


class BlockTypeRegistry:
    """Map from block type tag to its handler; unknown tags fall back to ``unsupported``."""

    FALLBACK = 'unsupported'

    def __init__(self):
        self._handlers: Dict[str, BlockHandler] = {}

    def register(self, handler: BlockHandler) -> None:
        self._handlers[handler.type] = handler

    def get(self, block_type: str) -> BlockHandler:
        return self._handlers.get(block_type) or self._handlers[self.FALLBACK]

    def is_recursable(self, block_type: str) -> bool:
        return self.get(block_type).recurse

    def __contains__(self, block_type):
        return block_type in self._handlers


block_registry = BlockTypeRegistry()

for _handler in (
    BlockHandler('paragraph', render=_render_paragraph),
    BlockHandler('heading_1', render=_render_heading(1)),
    BlockHandler('heading_2', render=_render_heading(2)),
    BlockHandler('heading_3', render=_render_heading(3)),
    BlockHandler('bulleted_list_item', render=_render_bulleted),
    BlockHandler('numbered_list_item', render=_render_numbered),
    BlockHandler('to_do', render=_render_todo),
    BlockHandler('toggle', render=_render_paragraph),
    BlockHandler('quote', render=_render_quote),
    BlockHandler('callout', render=_render_quote),
    BlockHandler('code', render=_render_code),
    BlockHandler('divider', render=_render_divider),
    BlockHandler('table', render=_render_container),
    BlockHandler('table_row', render=_render_table_row),
    BlockHandler('column_list', render=_render_container),
    BlockHandler('column', render=_render_container),
    BlockHandler('synced_block', render=_render_container),
    BlockHandler('image', render=_render_media, media=True),
    BlockHandler('file', render=_render_media, media=True),
    BlockHandler('pdf', render=_render_media, media=True),
    BlockHandler('video', render=_render_media, media=True),
    BlockHandler('audio', render=_render_media, media=True),
    # References to other objects: returned as leaf placeholders
    BlockHandler('child_page', recurse=False, render=_render_placeholder),
    BlockHandler('child_database', recurse=False, render=_render_placeholder),
    BlockHandler('link_preview', recurse=False, render=_render_placeholder),
    BlockHandler('unsupported', recurse=False, render=_render_placeholder),
):
    block_registry.register(_handler)


def hosted_media_blocks(blocks: List[BlockNode]) -> List[BlockNode]:
    """Media blocks in the tree whose file is hosted by the remote service."""
    found = []
    for root in blocks:
        for node in root.walk():
            if node.handler.media and node.payload.get('type') == HOSTED_FILE_TYPE:
                found.append(node)
    return found
