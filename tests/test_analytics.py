# Quality metrics and background task tests.
import asyncio
import logging

from studyquiz.analytics import (
    BackgroundTaskRegistry,
    calculate_quality_metrics,
    duplicate_ratio,
    jaccard_similarity,
)


def question(prompt, kind="mcq"):
    return {"id": prompt[:8], "type": kind, "prompt": prompt}


def test_quality_metrics_for_balanced_distinct_quiz():
    questions = [
        question("Which organelle produces cellular energy?"),
        question("Which pigment captures sunlight?"),
        question("Describe osmosis across membranes", "short"),
        question("Explain protein folding stability", "short"),
        question("Define enzyme catalysis kinetics", "short"),
    ]

    metrics = calculate_quality_metrics(questions)

    assert metrics["question_diversity_score"] == 1.0
    assert metrics["duplicate_ratio"] == 0.0
    assert metrics["concept_coverage_ratio"] == 1.0


def test_duplicates_detected_by_prompt_overlap():
    questions = [
        question("Which organelle produces cellular energy?"),
        question("Which organelle produces cellular energy quickly?"),
        question("Describe osmosis across membranes"),
    ]

    assert jaccard_similarity(questions[0]["prompt"], questions[1]["prompt"]) >= 0.7
    assert duplicate_ratio(questions) == 1 / 3


def test_quality_metrics_empty_quiz():
    assert calculate_quality_metrics([]) == {
        "concept_coverage_ratio": 0.0,
        "question_diversity_score": 0.0,
        "duplicate_ratio": 0.0,
    }


# Failed background tasks are logged and never propagated.
def test_failed_background_task_is_logged(caplog):
    caplog.set_level(logging.ERROR, logger="studyquiz.analytics")

    async def explode():
        raise RuntimeError("insert failed")

    async def scenario():
        registry = BackgroundTaskRegistry()
        registry.fire_and_forget(explode(), "generation_success_analytics", request_id="req-9")
        assert len(registry) == 1
        await registry.drain()
        await asyncio.sleep(0)
        return len(registry)

    assert asyncio.run(scenario()) == 0
    failures = [record for record in caplog.records if record.getMessage() == "Background task failed"]
    assert len(failures) == 1
    assert failures[0].request_id == "req-9"
    assert failures[0].fields["task"] == "generation_success_analytics"


def test_drain_cancels_stragglers():
    async def scenario():
        registry = BackgroundTaskRegistry()
        task = registry.fire_and_forget(asyncio.sleep(10), "slow")
        await registry.drain(timeout=0.01)
        await asyncio.gather(task, return_exceptions=True)
        return task.cancelled(), len(registry)

    assert asyncio.run(scenario()) == (True, 0)
