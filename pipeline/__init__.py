from pipeline.orchestrator import PipelineResult, StatementPipeline, estimate_accuracy

__all__ = ["PipelineResult", "StatementPipeline", "estimate_accuracy"]
