"""Tier Delivery Controller (TDC).

Control loop for a two-tier service backed by a replicated datastore:
 - health registry with hysteresis
 - per-tier traffic routing derived from health and lifecycle
 - rolling revision updates with bounded unavailability and rollback
 - primary/replica routing with confirmed promotion
 - release pipelines sequenced across tiers

Provisioning, business logic and artifact builds live elsewhere; this package
only decides which instance and which datastore node may receive traffic.
"""
