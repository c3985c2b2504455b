from .run_id import make_experiment_id, make_timestamp_tag, utcnow

__all__ = ["make_experiment_id", "make_timestamp_tag", "utcnow"]
