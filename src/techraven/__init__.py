"""
techraven - Technology Tree Toolkit

A Python toolkit for parsing Paradox-style technology files, merging
base game and mod definitions, and analysing the prerequisite graph.
"""

__version__ = "0.1.0"
__author__ = "techraven contributors"

from techraven.parser import parse_file, parse_source
from techraven.tech import TechRegistry, TechService, build_graph, extract_records
