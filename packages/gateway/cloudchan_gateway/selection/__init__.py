"""Selector/ranker and listing helpers."""

from cloudchan_gateway.selection.query import filter_gateways, sort_gateways
from cloudchan_gateway.selection.ranker import (
    PreferredGateway,
    annotate,
    rank_for_download,
    rank_for_probe,
    rank_for_warm,
)

__all__ = [
    "PreferredGateway",
    "annotate",
    "filter_gateways",
    "rank_for_download",
    "rank_for_probe",
    "rank_for_warm",
    "sort_gateways",
]
