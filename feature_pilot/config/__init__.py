"""Configuration system for feature-pilot.

Key Components:
    - FeaturePilotSettings: Main configuration container with YAML loading
    - StorageConfig: Location of persisted session documents
    - AgentConfig: External agent CLI invocation settings
    - PolicyConfig: Retry, staleness and rate thresholds

Example:
    >>> from feature_pilot.config.settings import FeaturePilotSettings
    >>> settings = FeaturePilotSettings.from_yaml("feature-pilot.yaml")
    >>> settings.policy.max_step_retries
    2
"""
