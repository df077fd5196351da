from lapsewatch.orchestration.pipeline import AnalysisPipeline
from lapsewatch.orchestration.runtime import build_pipeline, build_scheduler, build_source

__all__ = ["AnalysisPipeline", "build_pipeline", "build_scheduler", "build_source"]
