"""
Document content model - explicit node arena for structured documents
Every node lives in a ContentTree and is addressed by an integer id;
Element is a lightweight handle used by the merge engine.
"""

from collections import Counter
from typing import Dict, Iterator, List, Optional, Union


class ElementType:
    """Node types understood by the content tree."""

    BODY_SECTION = "BODY_SECTION"
    PARAGRAPH = "PARAGRAPH"
    LIST_ITEM = "LIST_ITEM"
    TABLE = "TABLE"
    TABLE_ROW = "TABLE_ROW"
    TABLE_CELL = "TABLE_CELL"
    TEXT = "TEXT"
    PAGE_BREAK = "PAGE_BREAK"
    INLINE_IMAGE = "INLINE_IMAGE"
    HORIZONTAL_RULE = "HORIZONTAL_RULE"
    EQUATION = "EQUATION"

    TEXT_CONTAINERS = frozenset({PARAGRAPH, LIST_ITEM})
    BLOCK_TYPES = frozenset({PARAGRAPH, LIST_ITEM, TABLE})
    BLOCK_CONTAINERS = frozenset({BODY_SECTION, TABLE_CELL})


# Default page geometry in points (US Letter, one inch margins).
DEFAULT_PAGE_ATTRIBUTES = {
    "page_width": 612.0,
    "page_height": 792.0,
    "margin_top": 72.0,
    "margin_bottom": 72.0,
    "margin_left": 72.0,
    "margin_right": 72.0,
}

# Marks the empty paragraph the host inserts after a trailing table.
SYNTHETIC_ATTRIBUTE = "synthetic"


class DocumentStructureError(Exception):
    """Raised when an edit would break the host's document structure rules."""


class UnsupportedElementError(DocumentStructureError):
    """Raised when an element type cannot be used for the requested edit."""


class Node:
    __slots__ = ("node_id", "type", "parent", "children", "text", "attributes")

    def __init__(self, node_id: int, element_type: str, text: Optional[str] = None,
                 attributes: Optional[Dict] = None):
        self.node_id = node_id
        self.type = element_type
        self.parent: Optional[int] = None
        self.children: List[int] = []
        self.text = text
        self.attributes = dict(attributes or {})


class ContentTree:
    """
    Arena of nodes forming one tree.

    A tree whose root has no parent is a detached fragment. Copies are always
    cloned into a fresh tree so they share no mutable state with the source.
    """

    def __init__(self):
        self.nodes: Dict[int, Node] = {}
        self.root: Optional[int] = None
        self.operations: Counter = Counter()
        self._next_id = 1

    def new_node(self, element_type: str, text: Optional[str] = None,
                 attributes: Optional[Dict] = None) -> int:
        node_id = self._next_id
        self._next_id += 1
        self.nodes[node_id] = Node(node_id, element_type, text, attributes)
        if self.root is None:
            self.root = node_id
        return node_id

    def node(self, node_id: int) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise DocumentStructureError(f"Element {node_id} no longer exists in this document") from None

    def element(self, node_id: int) -> "Element":
        return Element(self, node_id)

    def root_element(self) -> "Element":
        return Element(self, self.root)

    def link(self, parent_id: int, child_id: int, index: Optional[int] = None) -> None:
        parent = self.node(parent_id)
        child = self.node(child_id)
        if index is None or index >= len(parent.children):
            parent.children.append(child_id)
        else:
            parent.children.insert(max(0, index), child_id)
        child.parent = parent_id

    def discard(self, node_id: int) -> None:
        """Unlink a node from its parent and drop its whole subtree from the arena."""
        node = self.node(node_id)
        if node.parent is not None:
            self.node(node.parent).children.remove(node_id)
            node.parent = None
        stack = [node_id]
        while stack:
            current = self.nodes.pop(stack.pop())
            stack.extend(current.children)
        if self.root == node_id:
            self.root = None

    def clone_into(self, target: "ContentTree", node_id: int, strip_synthetic: bool = False) -> int:
        """Deep-clone the subtree at node_id into target; returns the new root id."""
        source = self.node(node_id)
        attributes = dict(source.attributes)
        if strip_synthetic:
            attributes.pop(SYNTHETIC_ATTRIBUTE, None)
        new_id = target.new_node(source.type, source.text, attributes)
        for child_id in source.children:
            child_copy = self.clone_into(target, child_id, strip_synthetic)
            target.link(new_id, child_copy)
        return new_id

    def copy_subtree(self, node_id: int) -> "ContentTree":
        fragment = ContentTree()
        self.clone_into(fragment, node_id)
        return fragment


def new_body_tree(attributes: Optional[Dict] = None) -> ContentTree:
    """Return a tree holding an empty body (one empty paragraph, like a new document)."""
    tree = ContentTree()
    page = dict(DEFAULT_PAGE_ATTRIBUTES)
    page.update(attributes or {})
    body_id = tree.new_node(ElementType.BODY_SECTION, attributes=page)
    tree.link(body_id, tree.new_node(ElementType.PARAGRAPH))
    return tree


def new_fragment(element_type: str, text: Optional[str] = None, attributes: Optional[Dict] = None) -> "Element":
    """Create a detached element of the given type in its own tree."""
    tree = ContentTree()
    return tree.element(tree.new_node(element_type, text, attributes))


def build_paragraph(text: str = "", element_type: str = ElementType.PARAGRAPH, **run_attributes) -> "Element":
    paragraph = new_fragment(element_type)
    if text:
        paragraph.append_text(text, **run_attributes)
    return paragraph


def build_table(cells: List[List[str]], attributes: Optional[Dict] = None) -> "Element":
    """Create a detached table from a row-major grid of cell texts."""
    table = new_fragment(ElementType.TABLE, attributes=attributes)
    for row_values in cells:
        row = table.append_row()
        for value in row_values:
            row.append_cell(value)
    return table


class Element:
    """
    Handle to one node of a ContentTree.

    The methods mirror the editing primitives of a remote document API:
    every structural change goes through a small set of calls, each counted
    in the owning tree's `operations` counter.
    """

    __slots__ = ("tree", "node_id")

    def __init__(self, tree: ContentTree, node_id: int):
        self.tree = tree
        self.node_id = node_id

    def __eq__(self, other):
        return isinstance(other, Element) and other.tree is self.tree and other.node_id == self.node_id

    def __hash__(self):
        return hash((id(self.tree), self.node_id))

    def __repr__(self):
        return f"<Element {self.type} #{self.node_id}>"

    @property
    def node(self) -> Node:
        return self.tree.node(self.node_id)

    @property
    def type(self) -> str:
        return self.node.type

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def get_parent(self) -> Optional["Element"]:
        parent = self.node.parent
        return Element(self.tree, parent) if parent is not None else None

    def get_num_children(self) -> int:
        return len(self.node.children)

    def get_child(self, index: int) -> "Element":
        children = self.node.children
        if index < 0 or index >= len(children):
            raise IndexError(f"Child index {index} out of bounds for {self.type} with {len(children)} children")
        return Element(self.tree, children[index])

    def get_children(self) -> List["Element"]:
        return [Element(self.tree, child_id) for child_id in self.node.children]

    def get_child_index(self, child: "Element") -> int:
        return self.node.children.index(child.node_id)

    def get_next_sibling(self) -> Optional["Element"]:
        parent = self.get_parent()
        if parent is None:
            return None
        index = parent.get_child_index(self)
        return parent.get_child(index + 1) if index + 1 < parent.get_num_children() else None

    def iter_descendants(self) -> Iterator["Element"]:
        """Yield every descendant in document order (pre-order, excluding self)."""
        stack = list(reversed(self.node.children))
        while stack:
            node_id = stack.pop()
            yield Element(self.tree, node_id)
            stack.extend(reversed(self.tree.node(node_id).children))

    def find_elements(self, element_type: str) -> List["Element"]:
        return [element for element in self.iter_descendants() if element.type == element_type]

    def get_tables(self) -> List["Element"]:
        return self.find_elements(ElementType.TABLE)

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def get_attribute(self, key: str, default=None):
        return self.node.attributes.get(key, default)

    def set_attribute(self, key: str, value) -> "Element":
        self.node.attributes[key] = value
        self.tree.operations["set_attribute"] += 1
        return self

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def get_text(self) -> str:
        element_type = self.type
        if element_type == ElementType.TEXT:
            return self.node.text or ""
        if element_type in ElementType.TEXT_CONTAINERS:
            return "".join(child.get_text() for child in self.get_children() if child.type == ElementType.TEXT)
        if element_type == ElementType.TABLE:
            return "\n".join(row.get_text() for row in self.get_children())
        if element_type == ElementType.TABLE_ROW:
            return "\t".join(cell.get_text() for cell in self.get_children())
        if element_type in ElementType.BLOCK_CONTAINERS:
            return "\n".join(child.get_text() for child in self.get_children())
        return ""

    def set_text(self, text: str) -> "Element":
        if self.type != ElementType.TEXT:
            raise UnsupportedElementError(f"Cannot set text on a {self.type} element")
        self.node.text = text
        self.tree.operations["edit_text"] += 1
        return self

    def insert_text(self, offset: int, text: str) -> "Element":
        current = self.get_text()
        if offset < 0 or offset > len(current):
            raise IndexError(f"Offset {offset} out of bounds for text of length {len(current)}")
        return self.set_text(current[:offset] + text + current[offset:])

    def delete_text(self, start: int, end_inclusive: int) -> "Element":
        current = self.get_text()
        return self.set_text(current[:start] + current[end_inclusive + 1:])

    def replace_text(self, search: str, replacement: str) -> int:
        """
        Replace every literal occurrence of `search` below this element.

        Occurrences that straddle neighbouring text runs of one paragraph are
        matched as well; the spanned runs collapse into the first run.

        Returns:
            Number of replacements made
        """
        if not search:
            return 0
        self.tree.operations["replace_text"] += 1

        if self.type == ElementType.TEXT:
            count = (self.node.text or "").count(search)
            if count:
                self.node.text = (self.node.text or "").replace(search, replacement)
            return count

        containers = [self] if self.type in ElementType.TEXT_CONTAINERS else []
        containers.extend(
            element for element in self.iter_descendants()
            if element.type in ElementType.TEXT_CONTAINERS
        )
        return sum(_replace_in_container(container, search, replacement) for container in containers)

    # ------------------------------------------------------------------
    # Structure editing
    # ------------------------------------------------------------------

    def copy(self) -> "Element":
        """Return a detached deep copy of this element (no parent, own tree)."""
        fragment = self.tree.copy_subtree(self.node_id)
        return fragment.root_element()

    def remove_from_parent(self) -> "Element":
        parent = self.get_parent()
        if parent is None:
            return self
        if parent.type == ElementType.BODY_SECTION:
            _check_body_removal(parent, self)
        self.tree.operations["remove"] += 1
        self.tree.discard(self.node_id)
        return self

    def clear(self) -> "Element":
        """Remove all content; body sections and cells keep one empty paragraph."""
        for child_id in list(self.node.children):
            self.tree.discard(child_id)
        self.tree.operations["clear"] += 1
        if self.type in ElementType.BLOCK_CONTAINERS:
            self.tree.link(self.node_id, self.tree.new_node(ElementType.PARAGRAPH))
        return self

    def insert_child(self, index: int, element: "Element") -> "Element":
        """Insert a copy of a detached element at index and return the inserted handle."""
        return self._graft(element, index, "insert")

    def append_child(self, element: "Element") -> "Element":
        return self._graft(element, None, "append")

    def append_paragraph(self, content: Union[None, str, "Element"] = None) -> "Element":
        return self._append_block(content, ElementType.PARAGRAPH)

    def append_list_item(self, content: Union[None, str, "Element"] = None) -> "Element":
        return self._append_block(content, ElementType.LIST_ITEM)

    def append_table(self, content: Union[None, List[List[str]], "Element"] = None) -> "Element":
        self._require_type(ElementType.BLOCK_CONTAINERS, "append a table")
        if content is None or isinstance(content, list):
            content = build_table(content or [[""]])
        if content.type != ElementType.TABLE:
            raise UnsupportedElementError(f"Expected a TABLE element, got {content.type}")
        table = self.append_child(content)
        # The host never lets a container end with a table.
        synthetic = self.tree.new_node(ElementType.PARAGRAPH, attributes={SYNTHETIC_ATTRIBUTE: True})
        self.tree.link(self.node_id, synthetic)
        return table

    def append_page_break(self) -> "Element":
        """
        Append a page break.

        On a body this creates a new paragraph holding the break; on a
        paragraph the break is appended inline.
        """
        if self.type in ElementType.TEXT_CONTAINERS:
            return self._append_inline(ElementType.PAGE_BREAK)
        if self.type != ElementType.BODY_SECTION:
            raise UnsupportedElementError(f"Cannot append a page break to a {self.type} element")
        paragraph = self.append_paragraph()
        paragraph.tree.link(paragraph.node_id, paragraph.tree.new_node(ElementType.PAGE_BREAK))
        return paragraph

    def append_text(self, text: str, **run_attributes) -> "Element":
        self._require_type(ElementType.TEXT_CONTAINERS, "append text")
        run = self._append_inline(ElementType.TEXT, text=text, attributes=run_attributes)
        return run

    def append_row(self) -> "Element":
        self._require_type({ElementType.TABLE}, "append a row")
        row_id = self.tree.new_node(ElementType.TABLE_ROW)
        self.tree.link(self.node_id, row_id)
        self.tree.operations["append"] += 1
        return Element(self.tree, row_id)

    def append_cell(self, text: str = "") -> "Element":
        self._require_type({ElementType.TABLE_ROW}, "append a cell")
        cell_id = self.tree.new_node(ElementType.TABLE_CELL)
        self.tree.link(self.node_id, cell_id)
        paragraph_id = self.tree.new_node(ElementType.PARAGRAPH)
        self.tree.link(cell_id, paragraph_id)
        if text:
            self.tree.link(paragraph_id, self.tree.new_node(ElementType.TEXT, text=text))
        self.tree.operations["append"] += 1
        return Element(self.tree, cell_id)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def get_num_rows(self) -> int:
        self._require_type({ElementType.TABLE}, "count rows")
        return self.get_num_children()

    def get_row(self, index: int) -> "Element":
        self._require_type({ElementType.TABLE}, "get a row")
        return self.get_child(index)

    def get_num_cells(self) -> int:
        self._require_type({ElementType.TABLE_ROW}, "count cells")
        return self.get_num_children()

    def get_cell(self, row_index: int, column_index: Optional[int] = None) -> "Element":
        """Row: get_cell(col). Table: get_cell(row, col)."""
        if self.type == ElementType.TABLE_ROW and column_index is None:
            return self.get_child(row_index)
        self._require_type({ElementType.TABLE}, "get a cell")
        return self.get_row(row_index).get_child(column_index)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_type(self, allowed, action: str) -> None:
        if self.type not in allowed:
            raise UnsupportedElementError(f"Cannot {action} on a {self.type} element")

    def _graft(self, element: "Element", index: Optional[int], operation: str) -> "Element":
        if element.get_parent() is not None:
            raise DocumentStructureError("Element must be detached before it can be inserted")
        new_id = element.tree.clone_into(self.tree, element.node_id, strip_synthetic=True)
        self.tree.link(self.node_id, new_id, index)
        self.tree.operations[operation] += 1
        return Element(self.tree, new_id)

    def _append_block(self, content, element_type: str) -> "Element":
        self._require_type(ElementType.BLOCK_CONTAINERS, f"append a {element_type.lower()}")
        if content is None or isinstance(content, str):
            content = build_paragraph(content or "", element_type=element_type)
        if content.type != element_type:
            raise UnsupportedElementError(f"Expected a {element_type} element, got {content.type}")
        return self.append_child(content)

    def _append_inline(self, element_type: str, text: Optional[str] = None,
                       attributes: Optional[Dict] = None) -> "Element":
        node_id = self.tree.new_node(element_type, text, attributes)
        self.tree.link(self.node_id, node_id)
        self.tree.operations["append"] += 1
        return Element(self.tree, node_id)


def _check_body_removal(body: Element, child: Element) -> None:
    remaining = [element for element in body.get_children() if element != child]
    if not remaining:
        raise DocumentStructureError("Can't remove the last paragraph in a document section")
    if remaining[0].type == ElementType.TABLE or remaining[-1].type == ElementType.TABLE:
        raise DocumentStructureError("A document section can't begin or end with a table")


def _replace_in_container(container: Element, search: str, replacement: str) -> int:
    """Run-aware literal replacement inside one paragraph or list item."""
    tree = container.tree
    count = 0
    segment: List[int] = []
    segments: List[List[int]] = []
    for child_id in container.node.children:
        if tree.node(child_id).type == ElementType.TEXT:
            segment.append(child_id)
        elif segment:
            segments.append(segment)
            segment = []
    if segment:
        segments.append(segment)

    for run_ids in segments:
        start = 0
        while True:
            texts = [tree.node(run_id).text or "" for run_id in run_ids]
            joined = "".join(texts)
            position = joined.find(search, start)
            if position < 0:
                break
            end = position + len(search)

            first_run, first_offset = _locate(texts, position)
            last_run, last_offset = _locate(texts, end - 1)
            last_offset += 1

            if first_run == last_run:
                text = texts[first_run]
                tree.node(run_ids[first_run]).text = text[:first_offset] + replacement + text[last_offset:]
            else:
                tree.node(run_ids[first_run]).text = texts[first_run][:first_offset] + replacement
                tree.node(run_ids[last_run]).text = texts[last_run][last_offset:]
                for run_id in run_ids[first_run + 1:last_run]:
                    tree.discard(run_id)
                run_ids = run_ids[:first_run + 1] + run_ids[last_run:]

            count += 1
            start = position + len(replacement)
    return count


def _locate(texts: List[str], index: int):
    """Map an index in the joined text to (run position, offset in run)."""
    consumed = 0
    for run_index, text in enumerate(texts):
        if index < consumed + len(text):
            return run_index, index - consumed
        consumed += len(text)
    raise IndexError(index)


class Position:
    """A cursor position: an element and an offset inside it."""

    def __init__(self, element: Element, offset: int):
        self.element = element
        self.offset = offset

    def get_element(self) -> Element:
        return self.element

    def get_offset(self) -> int:
        return self.offset


class RangeElement:
    """One element of a selection; partial when offsets are given."""

    def __init__(self, element: Element, start_offset: Optional[int] = None,
                 end_offset_inclusive: Optional[int] = None):
        self.element = element
        self.start_offset = start_offset
        self.end_offset_inclusive = end_offset_inclusive

    def get_element(self) -> Element:
        return self.element

    def is_partial(self) -> bool:
        return self.start_offset is not None and self.end_offset_inclusive is not None

    def get_start_offset(self) -> int:
        return self.start_offset if self.start_offset is not None else 0

    def get_end_offset_inclusive(self) -> int:
        if self.end_offset_inclusive is not None:
            return self.end_offset_inclusive
        return len(self.element.get_text()) - 1


class Document:
    """A document held by a store: identity, name, body tree and editing state."""

    def __init__(self, document_id: str, name: str, tree: Optional[ContentTree] = None,
                 folder_id: Optional[str] = None):
        self.id = document_id
        self.name = name
        self.tree = tree if tree is not None else new_body_tree()
        self.folder_id = folder_id
        self.cursor: Optional[Position] = None
        self.selection: Optional[List[RangeElement]] = None
        self.closed = False

    def get_id(self) -> str:
        return self.id

    def get_name(self) -> str:
        return self.name

    def get_body(self) -> Element:
        return self.tree.root_element()

    def get_cursor(self) -> Optional[Position]:
        return self.cursor

    def set_cursor(self, position: Optional[Position]) -> None:
        self.cursor = position

    def new_position(self, element: Element, offset: int) -> Position:
        return Position(element, offset)

    def get_selection(self) -> Optional[List[RangeElement]]:
        return self.selection

    def set_selection(self, range_elements: Optional[List[RangeElement]]) -> None:
        self.selection = list(range_elements) if range_elements else None

    def get_margin(self, side: str) -> float:
        return float(self.get_body().get_attribute(f"margin_{side}", DEFAULT_PAGE_ATTRIBUTES[f"margin_{side}"]))

    def set_margin(self, side: str, points: float) -> None:
        self.get_body().set_attribute(f"margin_{side}", float(points))
