"""
Request dependencies. Services are built once in the application lifespan and
kept on ``app.state``.
"""

from fastapi import Request

from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.services.aggregation import GradeAggregator
from grade_engine.services.curve_engine import CurveEngine
from grade_engine.services.curve_repository import CurveRepository
from grade_engine.services.sync.reconciled_store import ReconciledGradeStore
from grade_engine.services.validation import ScoreValidator


def get_validator(request: Request) -> ScoreValidator:
    return request.app.state.validator


def get_aggregator(request: Request) -> GradeAggregator:
    return request.app.state.aggregator


def get_curve_engine(request: Request) -> CurveEngine:
    return request.app.state.curve_engine


def get_curve_repository(request: Request) -> CurveRepository:
    return request.app.state.curve_repository


def get_grade_store(request: Request) -> ReconciledGradeStore:
    return request.app.state.grade_store


def get_connectivity_monitor(request: Request) -> ConnectivityMonitor:
    return request.app.state.connectivity
