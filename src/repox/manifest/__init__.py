"""Manifest handling: loading, resolving and filtering."""
from repox.manifest.filters import select_projects
from repox.manifest.loader import load_manifest, load_manifest_text, load_workspace_manifests
from repox.manifest.parser import parse_manifest
from repox.manifest.resolver import DefaultSpec, ProjectSpec, RemoteSpec, ResolvedManifest, resolve

__all__ = [
    "DefaultSpec",
    "ProjectSpec",
    "RemoteSpec",
    "ResolvedManifest",
    "load_manifest",
    "load_manifest_text",
    "load_workspace_manifests",
    "parse_manifest",
    "resolve",
    "select_projects",
]
