"""Execution engine -- build chains, concrete steps and the build service."""
from src.engine.builds import BuildService
from src.engine.chain import BuildChain, BuildContext, ChainResult, Continue, Halt

__all__ = ["BuildChain", "BuildContext", "BuildService", "ChainResult", "Continue", "Halt"]
