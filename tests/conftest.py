"""Shared fixtures: in-memory database, experiment config and record factories."""

import pytest

from nvdrs_ipv.config import (
    DataConfig, ExperimentConfig, ModelConfig, PromptConfig, RetryPolicy, RunConfig,
)
from nvdrs_ipv.db import create_db_engine, ensure_schema, make_session_factory
from nvdrs_ipv.ingest.narratives import NarrativeRecord
from nvdrs_ipv.storage.records import NarrativeResultRecord
from nvdrs_ipv.tracking.experiments import ExperimentTracker


def make_completion(content, model="test-model", prompt_tokens=50, completion_tokens=10):
    """Chat completion shaped like ``ChatCompletion.model_dump()``."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


@pytest.fixture
def completion():
    return make_completion


@pytest.fixture
def engine():
    """In-memory SQLite engine with the schema applied."""
    engine = create_db_engine("sqlite://")
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def experiment_config(tmp_path):
    return ExperimentConfig(
        name="baseline-test",
        author="tester",
        model=ModelConfig(
            name="test-model",
            temperature=0.0,
            provider="mock",
            api_url="http://localhost:1234/v1",
            api_key="secret-key",
            timeout_seconds=5,
        ),
        prompt=PromptConfig(
            system_prompt="You detect intimate partner violence.",
            user_template="Narrative: <<TEXT>>\nRespond in JSON.",
            version="v1",
            author="tester",
        ),
        data=DataConfig(file="narratives.csv"),
        run=RunConfig(
            seed=42,
            log_dir=str(tmp_path / "logs"),
            output_dir=str(tmp_path / "results"),
        ),
        retry=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def tracker(session):
    return ExperimentTracker(session)


@pytest.fixture
def experiment_id(tracker, experiment_config):
    return tracker.start_experiment(experiment_config)


@pytest.fixture
def make_record():
    """Factory for valid result records; keyword overrides any field."""

    def _make(experiment_id, incident_id="1001", narrative_type="cme", **overrides):
        fields = dict(
            experiment_id=experiment_id,
            incident_id=incident_id,
            narrative_type=narrative_type,
            narrative_text=f"Narrative for {incident_id}",
            manual_flag_individual=True,
            detected=True,
            confidence=0.9,
            indicators=["threats"],
            rationale="Prior threats by partner.",
            raw_response='{"detected": true}',
            response_time_seconds=1.2,
            prompt_tokens=50,
            completion_tokens=10,
            tokens_used=60,
            is_true_positive=True,
        )
        fields.update(overrides)
        return NarrativeResultRecord(**fields)

    return _make


@pytest.fixture
def narratives():
    """Ten CME narratives; odd-numbered ones mention abuse and are manually flagged."""
    return [
        NarrativeRecord(
            incident_id=f"{1000 + i}",
            narrative_type="cme",
            narrative_text=f"Narrative {i}: " + ("history of abuse by partner" if i % 2 else "accidental fall"),
            manual_flag_individual=bool(i % 2),
            manual_flag_case=bool(i % 2),
        )
        for i in range(1, 11)
    ]
