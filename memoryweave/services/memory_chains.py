"""
Memory chain reasoning: language-model proposals of ordered memory sequences.

A chain is a short run of memories that together tell one story about a
query (a decision trail, a cause and its effects). Accepted chains are stored,
each in its own transaction, as graph structure:
- ``follows`` edges between consecutive members
- one ``insight`` memory describing the chain
- ``related_to`` edges from the insight to every member

The same model can also flag contradicting memory pairs, optionally recorded
as ``contradicts`` edges. Both paths are enrichment: a provider outage or an
unparseable answer yields an empty result, never an exception.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

import memoryweave.config as config
from memoryweave.context import optional_user_id, require_tenant_id_value
from memoryweave.records import ChainMetadata, MemoryRecord, RelationshipRecord
from memoryweave.services.memory_relationships import EdgeSpec, MemoryGraph
from memoryweave.services.memory_search import HybridSearch
from memoryweave.services.memory_shared import (
    MAX_QUERY_LENGTH,
    _validate_required_text,
    logger,
)
from memoryweave.services.memory_store import MemoryStore
from memoryweave.services.providers import LanguageModelProvider

CHAIN_SYSTEM_PROMPT = "You are an AI memory reasoning system that creates logical chains between memories."
CONTRADICTION_SYSTEM_PROMPT = (
    "You are an AI memory consistency checker that identifies contradictions between memories."
)

MIN_CANDIDATE_RELEVANCE = 0.7

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ChainProposal(BaseModel):
    """One chain as proposed by the language model."""

    name: str = Field(..., min_length=1)
    memory_ids: List[str] = Field(default_factory=list)
    reasoning: str = Field(default="")
    confidence: float = Field(..., ge=0.0, le=1.0)


class ContradictionProposal(BaseModel):
    memory1_id: str
    memory2_id: str
    explanation: str = Field(default="")
    confidence: float = Field(..., ge=0.0, le=1.0)


@dataclass(frozen=True)
class MemoryChain:
    chain_id: str
    name: str
    memories: tuple[MemoryRecord, ...]
    reasoning: str
    confidence: float
    insight_id: Optional[str] = None

    @property
    def memory_ids(self) -> List[str]:
        return [memory.id for memory in self.memories]

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "name": self.name,
            "memory_ids": self.memory_ids,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "insight_id": self.insight_id,
        }


@dataclass(frozen=True)
class Contradiction:
    memory1: MemoryRecord
    memory2: MemoryRecord
    explanation: str
    confidence: float
    relationship_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "memory1_id": self.memory1.id,
            "memory2_id": self.memory2.id,
            "explanation": self.explanation,
            "confidence": self.confidence,
            "relationship_id": self.relationship_id,
        }


def parse_json_array(text: str) -> List[Any]:
    """Decode a JSON array answer, tolerating a markdown code fence around it."""
    cleaned = _FENCE.sub("", (text or "").strip())
    data = json.loads(cleaned)
    if not isinstance(data, list):
        raise ValueError("expected a JSON array")
    return data


def _validated(items: Sequence[Any], model: type[BaseModel]) -> List[BaseModel]:
    accepted = []
    for item in items:
        try:
            accepted.append(model.model_validate(item))
        except ValidationError as exc:
            logger.info(
                "llm_proposal_rejected",
                extra={"model": model.__name__, "errors": exc.error_count()},
            )
    return accepted


def _memory_payload(memory: MemoryRecord, relationships: Sequence[RelationshipRecord] = ()) -> dict:
    payload = {
        "id": memory.id,
        "type": memory.memory_type,
        "content": memory.content,
        "created_at": memory.created_at.isoformat() if memory.created_at else None,
    }
    payload["relationships"] = [
        {"type": edge.relationship_type, "connected_to": edge.other_end(memory.id)}
        for edge in relationships
    ]
    return payload


def build_chain_prompt(
    query: str,
    memories: Sequence[dict],
    max_chains: int,
    max_chain_length: int,
) -> str:
    return (
        "Analyze these memories and create logical chains that connect them in meaningful ways.\n"
        f'Each chain should tell a coherent story or reveal an insight related to the query: "{query}"\n\n'
        f"Memories:\n{json.dumps(list(memories), indent=2)}\n\n"
        f"Create up to {max_chains} memory chains. Each chain should:\n"
        f"1. Include between 2 and {max_chain_length} memories\n"
        "2. Have a clear logical connection between memories\n"
        "3. Include a reasoning explanation for why these memories form a chain\n"
        "4. Include a confidence score (0-1) for how certain you are about this chain\n\n"
        "Return only a JSON array of chains with this structure:\n"
        '[{"name": "Chain name", "memory_ids": ["id1", "id2"], '
        '"reasoning": "Why these memories connect", "confidence": 0.85}]'
    )


def build_contradiction_prompt(memories: Sequence[dict]) -> str:
    return (
        "Analyze these memories and identify any contradictions between them.\n\n"
        f"Memories:\n{json.dumps(list(memories), indent=2)}\n\n"
        "For each pair of memories that contradict each other, give both memory IDs, "
        "explain the contradiction and provide a confidence score (0-1).\n\n"
        "Return only a JSON array with this structure:\n"
        '[{"memory1_id": "id1", "memory2_id": "id2", '
        '"explanation": "What contradicts", "confidence": 0.85}]\n\n'
        "If there are no contradictions, return an empty array."
    )


class MemoryChainReasoner:
    def __init__(
        self,
        store: MemoryStore,
        graph: MemoryGraph,
        search: HybridSearch,
        llm: LanguageModelProvider,
        max_chain_length: Optional[int] = None,
        min_confidence: Optional[float] = None,
        max_chains: Optional[int] = None,
    ):
        self.store = store
        self.graph = graph
        self.search = search
        self.llm = llm
        self.max_chain_length = config.CHAIN_MAX_LENGTH if max_chain_length is None else max_chain_length
        self.min_confidence = config.CHAIN_MIN_CONFIDENCE if min_confidence is None else min_confidence
        self.max_chains = config.CHAIN_MAX_CHAINS if max_chains is None else max_chains

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def _select_members(self, proposal: ChainProposal, known: dict) -> List[MemoryRecord]:
        members: List[MemoryRecord] = []
        for memory_id in dict.fromkeys(proposal.memory_ids):
            if memory_id in known:
                members.append(known[memory_id])
            if len(members) >= self.max_chain_length:
                break
        return members

    def propose_chains(
        self,
        query: str,
        memories: Sequence[MemoryRecord],
        tenant_id: str,
    ) -> List[MemoryChain]:
        """Ask the model for chains over ``memories``; proposals are not persisted."""
        known = {memory.id: memory for memory in memories}
        edges = self.graph.relationships_for(list(known), tenant_id)
        payload = []
        for memory in memories:
            touching = [e for e in edges if memory.id in (e.source_id, e.target_id)]
            payload.append(_memory_payload(memory, touching))

        answer = self.llm.complete(
            build_chain_prompt(query, payload, self.max_chains, self.max_chain_length),
            system=CHAIN_SYSTEM_PROMPT,
            max_tokens=1500,
            temperature=0.7,
        )
        chains: List[MemoryChain] = []
        for proposal in _validated(parse_json_array(answer), ChainProposal):
            if proposal.confidence < self.min_confidence:
                continue
            members = self._select_members(proposal, known)
            if len(members) < 2:
                continue
            chains.append(
                MemoryChain(
                    chain_id=str(uuid.uuid4()),
                    name=proposal.name,
                    memories=tuple(members),
                    reasoning=proposal.reasoning,
                    confidence=proposal.confidence,
                )
            )
            if len(chains) >= self.max_chains:
                break
        return chains

    def create_memory_chains(
        self,
        query: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        persist: bool = True,
    ) -> List[MemoryChain]:
        """Search, propose and (optionally) store chains for ``query``."""
        _validate_required_text(query, "query", MAX_QUERY_LENGTH)
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        try:
            ranked = self.search.search(query, tenant_id, user_id=user_id)
            candidates = [
                item.memory for item in ranked if item.relevance >= MIN_CANDIDATE_RELEVANCE
            ][: config.CHAIN_MAX_CANDIDATES]
            if len(candidates) < 2:
                return []
            chains = self.propose_chains(query, candidates, tenant_id)
            if persist:
                chains = self._store_each(chains, tenant_id, user_id)
        except Exception as exc:
            logger.warning(
                "memory_chains_failed",
                extra={"tenant_id": tenant_id, "reason": exc.__class__.__name__},
            )
            return []
        logger.info(
            "memory_chains_created",
            extra={"tenant_id": tenant_id, "count": len(chains), "persisted": persist},
        )
        return chains

    def store_memory_chain(
        self,
        chain: MemoryChain,
        tenant_id: str,
        user_id: Optional[str] = None,
    ) -> MemoryChain:
        """Write the insight, its ``related_to`` edges and the ``follows`` path atomically."""
        tenant_id = require_tenant_id_value(tenant_id)
        link = {"chain_id": chain.chain_id}
        members = chain.memories

        def chain_edges(insight_id: str) -> List[EdgeSpec]:
            edges = [
                EdgeSpec(members[i].id, members[i + 1].id, "follows", chain.confidence, dict(link))
                for i in range(len(members) - 1)
            ]
            edges.extend(
                EdgeSpec(insight_id, memory.id, "related_to", 1.0, dict(link)) for memory in members
            )
            return edges

        insight = self.store.create_linked(
            f"{chain.name}\n\n{chain.reasoning}",
            "insight",
            tenant_id,
            chain_edges,
            user_id=user_id,
            metadata=ChainMetadata(
                chain_id=chain.chain_id,
                chain_confidence=chain.confidence,
                memory_ids=tuple(chain.memory_ids),
            ).to_dict(),
        )
        return MemoryChain(
            chain_id=chain.chain_id,
            name=chain.name,
            memories=chain.memories,
            reasoning=chain.reasoning,
            confidence=chain.confidence,
            insight_id=insight.id,
        )

    def _store_each(
        self,
        chains: Sequence[MemoryChain],
        tenant_id: str,
        user_id: Optional[str],
    ) -> List[MemoryChain]:
        stored: List[MemoryChain] = []
        for chain in chains:
            try:
                stored.append(self.store_memory_chain(chain, tenant_id, user_id))
            except Exception as exc:
                logger.warning(
                    "memory_chain_store_failed",
                    extra={
                        "tenant_id": tenant_id,
                        "chain_id": chain.chain_id,
                        "reason": exc.__class__.__name__,
                    },
                )
        return stored

    def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: str,
        tenant_id: str,
        strength: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> RelationshipRecord:
        record, _ = self.graph.create_relationship(
            source_id,
            target_id,
            relationship_type,
            tenant_id,
            strength=strength,
            metadata=metadata,
        )
        return record

    # ------------------------------------------------------------------
    # Contradictions
    # ------------------------------------------------------------------

    def find_contradictions(
        self,
        memories: Sequence[MemoryRecord],
        tenant_id: str,
        record: bool = False,
    ) -> List[Contradiction]:
        tenant_id = require_tenant_id_value(tenant_id)
        if len(memories) < 2:
            return []
        known = {memory.id: memory for memory in memories}
        payload = [
            {
                "id": memory.id,
                "type": memory.memory_type,
                "content": memory.content,
                "created_at": memory.created_at.isoformat() if memory.created_at else None,
            }
            for memory in memories
        ]
        try:
            answer = self.llm.complete(
                build_contradiction_prompt(payload),
                system=CONTRADICTION_SYSTEM_PROMPT,
                max_tokens=1000,
                temperature=0.7,
            )
            found: List[Contradiction] = []
            seen = set()
            for proposal in _validated(parse_json_array(answer), ContradictionProposal):
                if proposal.confidence < config.CONTRADICTION_MIN_CONFIDENCE:
                    continue
                first = known.get(proposal.memory1_id)
                second = known.get(proposal.memory2_id)
                if first is None or second is None or first.id == second.id:
                    continue
                pair = frozenset((first.id, second.id))
                if pair in seen:
                    continue
                seen.add(pair)
                found.append(
                    Contradiction(
                        memory1=first,
                        memory2=second,
                        explanation=proposal.explanation,
                        confidence=proposal.confidence,
                    )
                )
            if record:
                found = [self._record_contradiction(item, tenant_id) for item in found]
        except Exception as exc:
            logger.warning(
                "contradiction_check_failed",
                extra={"tenant_id": tenant_id, "reason": exc.__class__.__name__},
            )
            return []
        return found

    def _record_contradiction(self, item: Contradiction, tenant_id: str) -> Contradiction:
        edge = self.create_relationship(
            item.memory1.id,
            item.memory2.id,
            "contradicts",
            tenant_id,
            strength=item.confidence,
            metadata={"explanation": item.explanation},
        )
        return Contradiction(
            memory1=item.memory1,
            memory2=item.memory2,
            explanation=item.explanation,
            confidence=item.confidence,
            relationship_id=edge.id,
        )


__all__ = [
    "ChainProposal",
    "Contradiction",
    "ContradictionProposal",
    "MemoryChain",
    "MemoryChainReasoner",
    "build_chain_prompt",
    "build_contradiction_prompt",
    "parse_json_array",
]
