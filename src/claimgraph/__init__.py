"""
claimgraph - statement store for a Wikidata-style knowledge graph.
"""

__version__ = "0.1.0"
