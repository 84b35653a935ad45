"""
Models package for the Velar pipeline

This package contains the stateful components of the pipeline:
- CaptureQueueManager: Screen/audio capture and the bounded capture queues
- InferenceClient: Provider configuration, model catalog and backend selection
- CloudBackend / LocalBackend: Hosted and locally served model backends
- SettingsManager: Pipeline configuration and validation
"""
