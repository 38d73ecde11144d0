"""
User pair identification over a topic's reply tree.

Rules:
1. Direct reply: A replies to B -> (A, B) form a pair
2. Multiple rounds between A and B accumulate into the same pair
3. No transitive pairs: A replies to B and C replies to A gives (A, B) and
   (A, C) only, never (B, C)

The earliest parent-less document is the topic's original. Any other
parent-less document is treated as a direct reply to it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from consensus_backend.services.topic_reader import DocumentNode, load_document_nodes

logger = logging.getLogger(__name__)

USER1_TO_USER2 = "user1->user2"
USER2_TO_USER1 = "user2->user1"


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Order-independent pair key: (min, max)."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


@dataclass
class DiscussionPath:
    path: List[str]  # [parent_doc_id, child_doc_id]
    depth: int
    direction: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": list(self.path), "depth": self.depth, "direction": self.direction}


@dataclass
class UserPair:
    user_id1: str
    user_id2: str
    doc_ids: List[str] = field(default_factory=list)
    discussion_paths: List[DiscussionPath] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id1, self.user_id2)

    def add_edge(self, parent: DocumentNode, child: DocumentNode, depth: int) -> None:
        for doc_id in (parent.id, child.id):
            if doc_id not in self.doc_ids:
                self.doc_ids.append(doc_id)
        path = [parent.id, child.id]
        if any(existing.path == path for existing in self.discussion_paths):
            return
        direction = USER1_TO_USER2 if child.author_id == self.user_id1 else USER2_TO_USER1
        self.discussion_paths.append(DiscussionPath(path=path, depth=depth, direction=direction))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id1": self.user_id1,
            "user_id2": self.user_id2,
            "doc_ids": list(self.doc_ids),
            "discussion_paths": [p.to_dict() for p in self.discussion_paths],
        }


def find_true_original(docs: Sequence[DocumentNode]) -> Optional[DocumentNode]:
    roots = [doc for doc in docs if not doc.parent_id]
    if not roots:
        return None
    return min(roots, key=lambda doc: doc.created_at)


def _depth(doc: DocumentNode, doc_map: Dict[str, DocumentNode], original: Optional[DocumentNode]) -> int:
    """Parent hops from the topic original; stray roots sit at depth 1."""
    depth = 0
    current = doc
    seen = {doc.id}
    while current.parent_id:
        parent = doc_map.get(current.parent_id)
        if parent is None or parent.id in seen:
            break
        seen.add(parent.id)
        depth += 1
        current = parent
    if original is not None and not current.parent_id and current.id != original.id:
        depth += 1
    return depth


def build_user_pairs(docs: Sequence[DocumentNode]) -> List[UserPair]:
    """Identify all user pairs connected by a direct reply edge."""
    doc_map = {doc.id: doc for doc in docs}
    original = find_true_original(docs)
    pairs: Dict[Tuple[str, str], UserPair] = {}

    stray_roots = [doc for doc in docs if not doc.parent_id and original is not None and doc.id != original.id]
    if stray_roots:
        logger.warning(
            "[UserPairs] %d extra root-level document(s) treated as replies to original %s",
            len(stray_roots),
            original.id,
        )

    def _pair_for(a: str, b: str) -> UserPair:
        key = canonical_pair(a, b)
        if key not in pairs:
            pairs[key] = UserPair(user_id1=key[0], user_id2=key[1])
        return pairs[key]

    for doc in docs:
        if doc.parent_id:
            parent = doc_map.get(doc.parent_id)
            if parent is not None and parent.author_id != doc.author_id:
                _pair_for(doc.author_id, parent.author_id).add_edge(parent, doc, _depth(doc, doc_map, original))
        elif original is not None and doc.id == original.id:
            for reply in docs:
                if reply.parent_id == doc.id and reply.author_id != doc.author_id:
                    _pair_for(doc.author_id, reply.author_id).add_edge(doc, reply, 1)
        elif original is not None and doc.author_id != original.author_id:
            _pair_for(doc.author_id, original.author_id).add_edge(original, doc, 1)

    return list(pairs.values())


def find_pair(pairs: Sequence[UserPair], user_a: str, user_b: str) -> Optional[UserPair]:
    key = canonical_pair(user_a, user_b)
    for pair in pairs:
        if pair.key == key:
            return pair
    return None


def get_user_pair_documents(docs: Sequence[DocumentNode], user_a: str, user_b: str) -> List[DocumentNode]:
    """Documents of the two users that take part in a direct reply edge between them."""
    pair = find_pair(build_user_pairs(docs), user_a, user_b)
    if pair is None:
        return []
    wanted = set(pair.doc_ids)
    return [doc for doc in docs if doc.id in wanted]


async def identify_pairs(db, topic_id: str) -> List[UserPair]:
    docs = await load_document_nodes(db, topic_id)
    return build_user_pairs(docs)
