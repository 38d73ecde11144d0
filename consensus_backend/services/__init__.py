"""Services for topic consensus analysis."""

from .consensus_tracker import ConsensusTracker
from .pair_consensus import PairConsensusAnalyzer
from .similarity_service import SimilarityService

__all__ = [
    'ConsensusTracker',
    'PairConsensusAnalyzer',
    'SimilarityService',
]
