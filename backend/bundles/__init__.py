"""
Bundle packaging: portable, tenant-agnostic project bundles.

Modules:
- models: bundle schema (manifest, env var specs, deployment config)
- deployment_config: environment / collection synthesizer
- exporter / importer: tenant-scoped records <-> bundle definitions
- injector: writes validated bundles into a template checkout
"""
