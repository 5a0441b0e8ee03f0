"""
Literature-derived causal graph for heart-failure mortality.

Edges encode direct influences reported in the cardiology and nephrology literature.
They are the starting point for refinement against the data, not a fitted result.
"""

import logging
from typing import Dict, List, Optional

from .dag import CausalDAG, Edge


logger = logging.getLogger(__name__)


NODES = [
    'Age', 'Sex', 'Smoking', 'Diabetes', 'BP', 'Anaemia',
    'Creatinine', 'Sodium', 'EF', 'Platelets', 'CPK', 'Event',
]

LITERATURE_EDGES: List[Edge] = [
    # Demographics
    ('Age', 'BP'),
    ('Age', 'Diabetes'),
    ('Age', 'Creatinine'),
    ('Age', 'EF'),
    ('Age', 'Event'),
    ('Sex', 'Smoking'),
    ('Sex', 'Creatinine'),
    ('Sex', 'Anaemia'),
    # Lifestyle and comorbidities
    ('Smoking', 'BP'),
    ('Smoking', 'EF'),
    ('Diabetes', 'BP'),
    ('Diabetes', 'Creatinine'),
    ('BP', 'Creatinine'),
    ('BP', 'EF'),
    # Cardiorenal axis
    ('Creatinine', 'Anaemia'),
    ('Creatinine', 'Sodium'),
    ('Creatinine', 'Event'),
    ('EF', 'Sodium'),
    ('EF', 'Event'),
    ('Sodium', 'Event'),
    ('Anaemia', 'Event'),
    # Markers
    ('CPK', 'EF'),
    ('Platelets', 'Event'),
]

# Edge directions for pairs the literature graph may later need to connect; used to
# orient edges proposed by independence-test violations.
PLAUSIBLE_DIRECTIONS: Dict[frozenset, Edge] = {
    frozenset(edge): edge for edge in [
        ('Age', 'Sodium'),
        ('Age', 'Anaemia'),
        ('Age', 'CPK'),
        ('Age', 'Platelets'),
        ('Sex', 'EF'),
        ('Sex', 'CPK'),
        ('Sex', 'Platelets'),
        ('Smoking', 'Creatinine'),
        ('Smoking', 'Event'),
        ('Diabetes', 'EF'),
        ('Diabetes', 'Event'),
        ('Diabetes', 'Sodium'),
        ('BP', 'Event'),
        ('BP', 'Sodium'),
        ('Anaemia', 'EF'),
        ('Anaemia', 'Platelets'),
        ('Creatinine', 'EF'),
        ('CPK', 'Creatinine'),
        ('CPK', 'Event'),
        ('Platelets', 'EF'),
    ]
}


def literature_dag() -> CausalDAG:
    """The heart-failure DAG proposed from domain literature."""
    return CausalDAG(NODES, LITERATURE_EDGES)


def plausible_direction(a: str, b: str) -> Optional[Edge]:
    """Literature orientation for a pair, or None if the pair has none on record."""
    return PLAUSIBLE_DIRECTIONS.get(frozenset((a, b)))


def literature_edge_chooser(violation) -> Optional[Edge]:
    """
    Orient the edge proposed by a violated independence claim.

    Only pairs with a literature orientation are resolved; any other violation is left
    for review and stays in the final evaluation report.
    """
    claim = violation.claim
    edge = plausible_direction(claim.x, claim.y)
    if edge is None:
        logger.info(f"No literature orientation for {claim.x} - {claim.y}; leaving {claim} unresolved")
    return edge
