"""
SciLoop — Scientific Loop Agents

A closed debugging loop that turns failure signals into verified fixes
and new regression tests, with no model calls in the core.

  ProblemDetector            — raw check results → typed problems
  HypothesisGenerator        — problem → ranked falsifiable hypotheses
  HypothesisTester           — hypothesis → verdict + confidence
  FixGenerator               — supported hypothesis → candidate fixes
  FixVerifier                — fix → binary reward (all three checks or nothing)
  BenchmarkEvolver           — accepted fix → prevention tests and guards
  ScientificLoopOrchestrator — sequences the above, escalates the rest
  ImprovementTracker         — loop health over time
"""

from sciloop.agents.base import AgentRegistry, LoopAgent
from sciloop.agents.benchmark_evolver import BenchmarkEvolver
from sciloop.agents.fix_generator import FixGenerator
from sciloop.agents.fix_verifier import FixVerifier
from sciloop.agents.hypothesis_generator import HypothesisGenerator
from sciloop.agents.hypothesis_tester import HypothesisTester
from sciloop.agents.improvement_tracker import ImprovementTracker
from sciloop.agents.orchestrator import ScientificLoopOrchestrator
from sciloop.agents.problem_detector import ProblemDetector

__all__ = [
    "LoopAgent",
    "AgentRegistry",
    "ProblemDetector",
    "HypothesisGenerator",
    "HypothesisTester",
    "FixGenerator",
    "FixVerifier",
    "BenchmarkEvolver",
    "ScientificLoopOrchestrator",
    "ImprovementTracker",
]
