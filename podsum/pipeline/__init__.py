"""Pipeline core: feed diffing, stage runner, chunk-reduce summarizer, orchestrator.

Submodules are imported explicitly (`podsum.pipeline.orchestrator`, ...) so that
`podsum.config` can import the runner without pulling in the orchestrator.
"""
