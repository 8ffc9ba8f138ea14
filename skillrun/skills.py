"""Skill bundles on disk: manifests, validation and profile selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

_MANIFEST_NAMES = ("skill.yaml", "skill.yml")


class SkillRegistryError(Exception):
    """Raised when a skill bundle cannot be found, read or validated."""


def _field(data: Any, key: str, context: str) -> Any:
    if not isinstance(data, Mapping) or key not in data:
        raise SkillRegistryError(f"missing field '{key}' in {context}")
    return data[key]


def _mapping(data: Any, context: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise SkillRegistryError(f"{context} must be a mapping")
    return data


def _string_list(value: Any, context: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SkillRegistryError(f"{context} must be a list")
    return [str(item) for item in value]


@dataclass(frozen=True)
class SkillBuildSpec:
    tool: str
    module: str


@dataclass(frozen=True)
class _WasmRuntimeManifest:
    wit_path: str
    world: str
    artifacts_dir: str
    build: SkillBuildSpec | None = None

    @staticmethod
    def from_dict(data: Any) -> _WasmRuntimeManifest:
        data = _mapping(data, "wasm runtime")
        wit = _field(data, "wit", "wasm runtime")
        artifacts = _field(data, "artifacts", "wasm runtime")
        raw_build = data.get("build")
        build = None
        if raw_build is not None:
            build = SkillBuildSpec(
                tool=str(_field(raw_build, "tool", "wasm build")),
                module=str(_field(raw_build, "module", "wasm build")),
            )
        return _WasmRuntimeManifest(
            wit_path=str(_field(wit, "path", "wasm wit")),
            world=str(_field(wit, "world", "wasm wit")),
            artifacts_dir=str(_field(artifacts, "dir", "wasm artifacts")),
            build=build,
        )


@dataclass(frozen=True)
class SkillProfileManifest:
    """One runnable profile of a skill."""

    name: str
    runtime_kind: str
    default: bool = False
    wasm: _WasmRuntimeManifest | None = None
    capabilities: list[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Any) -> SkillProfileManifest:
        data = _mapping(data, "profile")
        runtime = _mapping(_field(data, "runtime", "profile"), "profile runtime")
        raw_wasm = runtime.get("wasm")
        return SkillProfileManifest(
            name=str(_field(data, "name", "profile")),
            runtime_kind=str(_field(runtime, "kind", "profile runtime")),
            default=bool(data.get("default", False)),
            wasm=None if raw_wasm is None else _WasmRuntimeManifest.from_dict(raw_wasm),
            capabilities=_string_list(data.get("capabilities"), "profile capabilities"),
        )


@dataclass(frozen=True)
class SkillManifest:
    """The parsed contents of a skill.yaml file."""

    schema_version: int
    name: str
    version: str
    description: str = ""
    instructions_source: str | None = None
    databases: list[Any] = field(default_factory=list)
    profiles: list[SkillProfileManifest] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Any) -> SkillManifest:
        data = _mapping(data, "skill manifest")
        skill = _mapping(_field(data, "skill", "skill manifest"), "skill")
        defaults = data.get("defaults") or {}
        defaults = _mapping(defaults, "defaults")
        instructions = defaults.get("instructions")
        instructions_source = (
            None if instructions is None else str(_field(instructions, "source", "instructions"))
        )
        raw_profiles = _field(data, "profiles", "skill manifest")
        if not isinstance(raw_profiles, list):
            raise SkillRegistryError("profiles must be a list")
        raw_schema = _field(data, "schema_version", "skill manifest")
        try:
            schema_version = int(raw_schema)
        except (TypeError, ValueError):
            raise SkillRegistryError(f"invalid schema_version '{raw_schema}'") from None
        return SkillManifest(
            schema_version=schema_version,
            name=str(_field(skill, "name", "skill")),
            version=str(_field(skill, "version", "skill")),
            description=str(skill.get("description") or ""),
            instructions_source=instructions_source,
            databases=list(defaults.get("databases") or []),
            profiles=[SkillProfileManifest.from_dict(profile) for profile in raw_profiles],
        )


@dataclass(frozen=True)
class SkillDescription:
    name: str
    version: str
    profile_count: int


@dataclass(frozen=True)
class SkillBundle:
    root: Path
    manifest_path: Path
    manifest: SkillManifest


@dataclass(frozen=True)
class LoadedWasmSkillRuntime:
    wit_path: Path
    world: str


@dataclass(frozen=True)
class LoadedSkillProfile:
    """A profile resolved against the bundle directory it lives in."""

    skill_name: str
    skill_version: str
    profile_name: str
    runtime_kind: str
    instructions_path: Path | None
    capabilities: list[str]
    artifact_dir: Path | None
    build: SkillBuildSpec | None
    wasm: LoadedWasmSkillRuntime | None
    bundle_root: Path


def validate_manifest(manifest: SkillManifest) -> None:
    """Raise SkillRegistryError if the manifest is not usable."""
    if manifest.schema_version != 1:
        raise SkillRegistryError(
            f"unsupported skill schema version {manifest.schema_version}"
        )
    if not manifest.name.strip():
        raise SkillRegistryError("skill name cannot be empty")
    if not manifest.profiles:
        raise SkillRegistryError("skill must define at least one profile")
    if sum(1 for profile in manifest.profiles if profile.default) > 1:
        raise SkillRegistryError("skill manifest cannot declare more than one default profile")
    for profile in manifest.profiles:
        if not profile.name.strip():
            raise SkillRegistryError("profile name cannot be empty")
        if profile.runtime_kind == "wasm-component" and profile.wasm is None:
            raise SkillRegistryError(
                f"profile '{profile.name}' declares wasm-component runtime without wasm config"
            )


class FileSystemSkillRegistry:
    """Skill bundles stored as one directory per skill under a root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _load_bundle_from_dir(self, skill_root: Path) -> SkillBundle:
        manifest_path = next(
            (skill_root / name for name in _MANIFEST_NAMES if (skill_root / name).exists()),
            None,
        )
        if manifest_path is None:
            raise SkillRegistryError(f"no skill manifest found in {skill_root}")
        try:
            source = manifest_path.read_text(encoding="utf-8")
        except OSError as error:
            raise SkillRegistryError(str(error)) from error
        try:
            data = yaml.safe_load(source)
        except yaml.YAMLError as error:
            raise SkillRegistryError(str(error)) from error
        manifest = SkillManifest.from_dict(data)
        validate_manifest(manifest)
        return SkillBundle(root=skill_root, manifest_path=manifest_path, manifest=manifest)

    @staticmethod
    def _select_profile(bundle: SkillBundle, profile_name: str | None) -> SkillProfileManifest:
        profiles = bundle.manifest.profiles
        if profile_name is not None:
            for profile in profiles:
                if profile.name == profile_name:
                    return profile
            raise SkillRegistryError(
                f"profile '{profile_name}' not found for skill '{bundle.manifest.name}'"
            )
        for profile in profiles:
            if profile.default:
                return profile
        if not profiles:
            raise SkillRegistryError("skill has no profiles")
        return profiles[0]

    def list_skills(self) -> list[SkillDescription]:
        if not self.root.exists():
            return []
        try:
            entries = [entry for entry in self.root.iterdir() if entry.is_dir()]
        except OSError as error:
            raise SkillRegistryError(str(error)) from error
        skills = []
        for entry in entries:
            manifest = self._load_bundle_from_dir(entry).manifest
            skills.append(
                SkillDescription(
                    name=manifest.name,
                    version=manifest.version,
                    profile_count=len(manifest.profiles),
                )
            )
        skills.sort(key=lambda skill: skill.name)
        return skills

    def load_skill(self, skill_name: str) -> SkillBundle:
        return self._load_bundle_from_dir(self.root / skill_name)

    def load_profile(self, skill_name: str, profile_name: str | None = None) -> LoadedSkillProfile:
        bundle = self.load_skill(skill_name)
        profile = self._select_profile(bundle, profile_name)
        manifest = bundle.manifest
        wasm = profile.wasm
        return LoadedSkillProfile(
            skill_name=manifest.name,
            skill_version=manifest.version,
            profile_name=profile.name,
            runtime_kind=profile.runtime_kind,
            instructions_path=(
                None
                if manifest.instructions_source is None
                else bundle.root / manifest.instructions_source
            ),
            capabilities=list(profile.capabilities),
            artifact_dir=None if wasm is None else bundle.root / wasm.artifacts_dir,
            build=None if wasm is None else wasm.build,
            wasm=(
                None
                if wasm is None
                else LoadedWasmSkillRuntime(wit_path=bundle.root / wasm.wit_path, world=wasm.world)
            ),
            bundle_root=bundle.root,
        )