"""Intent dispatch - run the detector chain in a fixed order.

Follow-ups are checked first, then a cheap structural-keyword gate, then the
detectors in ``DETECTOR_CHAIN`` order. The first detector that returns an
intent wins. Most parameter-constrained operations come first so a generic
aggregation never swallows a ranking or trend question.
"""

from typing import Any, Callable, Optional, Sequence

import structlog

from insightvault.planning.detectors import (
    detect_aggregate,
    detect_conditional_count,
    detect_dataset_info,
    detect_filter,
    detect_filtered_aggregate,
    detect_group_by,
    detect_group_rank,
    detect_list_all,
    detect_lookup,
    detect_outlier,
    detect_top_n,
    detect_trend,
    looks_structural,
)
from insightvault.planning.followups import detect_followup
from insightvault.planning.intent import NoIntent
from insightvault.planning.schema import DatasetSchema

logger = structlog.get_logger(__name__)

Detector = Callable[[str, DatasetSchema], Optional[Any]]

DETECTOR_CHAIN: tuple[tuple[str, Detector], ...] = (
    ("dataset_info", detect_dataset_info),
    ("list_all", detect_list_all),
    ("top_n", detect_top_n),
    ("group_by", detect_group_by),
    ("group_rank", detect_group_rank),
    ("conditional_count", detect_conditional_count),
    ("filtered_aggregate", detect_filtered_aggregate),
    ("aggregate", detect_aggregate),
    ("filter", detect_filter),
    ("trend", detect_trend),
    ("outlier", detect_outlier),
    ("lookup", detect_lookup),
)


def route_question(
    question: str,
    schema: DatasetSchema,
    history: Sequence[Any] = (),
    chain: Sequence[tuple[str, Detector]] = DETECTOR_CHAIN,
):
    """
    Decide which operation a question asks for.

    Never raises: a detector that fails is logged and skipped, and the chain
    continues with the next detector.

    Args:
        question: Raw user question
        schema: Schema inferred from the full row set
        history: Prior conversation turns
        chain: Detector order (overridable for tests)

    Returns:
        An intent; NoIntent when nothing claims the question
    """
    try:
        followup = detect_followup(question, history)
    except Exception as e:
        logger.warning("detector_failed", detector="follow_up", error=str(e), exc_info=True)
        followup = None
    if followup is not None:
        logger.info("intent_dispatched", detector="follow_up", kind=followup.kind)
        return followup

    if not looks_structural(question):
        logger.info("intent_dispatched", detector=None, kind="none", reason="not_structural")
        return NoIntent(reason="not_structural")

    for name, detector in chain:
        try:
            intent = detector(question, schema)
        except Exception as e:
            logger.warning("detector_failed", detector=name, error=str(e), exc_info=True)
            continue
        if intent is not None:
            logger.info("intent_dispatched", detector=name, kind=intent.kind)
            return intent

    logger.info("intent_dispatched", detector=None, kind="none", reason="no_detector_matched")
    return NoIntent(reason="no_detector_matched")
