"""Command-line interface router for avatar-morphology."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from avatar_morphology.blending.blender import Blender, BlendSettings, EmptyInputError
from avatar_morphology.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
    resolve_secret,
)
from avatar_morphology.main import ExitCode
from avatar_morphology.observability.logging import (
    LoggingConfig,
    configure_logging,
    parse_log_level,
)
from avatar_morphology.pipeline.resolver import (
    AppliedResolution,
    MorphologyResolver,
    ResolutionSettings,
)
from avatar_morphology.pipeline.strategies import ResolutionRequest
from avatar_morphology.policy.mapping import (
    GenderMappingTable,
    InvalidMappingError,
    default_mapping_table,
    load_mapping_table,
)
from avatar_morphology.refinement.client import HttpRefinementTransport, RefinementClient
from avatar_morphology.refinement.errors import BackoffConfig, SchemaValidationError
from avatar_morphology.skeleton.config import (
    BoneMappingConfig,
    BoneMappingError,
    default_bone_mapping,
    load_bone_mapping,
)
from avatar_morphology.skeleton.scaler import BoneScaler
from avatar_morphology.streaming.orchestrator import (
    InMemoryMorphMesh,
    StreamOrchestrator,
    StreamSettings,
)
from avatar_morphology.validation.clamper import AvatarStyle


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONFIG_ERROR)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="avatar-morph",
        description=(
            "avatar-morphology: resolve body-scan output into validated morph parameters.\n\n"
            "Common workflows:\n"
            "  avatar-morph resolve scan.json            Resolve and print parameters\n"
            "  avatar-morph bones result.json --bones b  Compute bone scale targets\n"
            "  avatar-morph config                       Show effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./avatar_morphology.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log at DEBUG level (default: warnings and errors only).",
    )
    common.add_argument("--json", action="store_true", help="Emit JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # resolve -------------------------------------------------------------
    resolve_parser = subparsers.add_parser(
        "resolve",
        parents=[common],
        help="Resolve a scan-result document into validated parameters",
        description=(
            "Run the strategy chain, validation, optional refinement and completion\n"
            "for one scan-result JSON document.\n\n"
            "Examples:\n"
            "  avatar-morph resolve scan.json\n"
            "  avatar-morph resolve scan.json --gender female --no-refine --json\n"
            "  avatar-morph resolve scan.json --bones bones.txt --targets targets.txt\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resolve_parser.add_argument("input", help="Scan-result JSON document")
    resolve_parser.add_argument("--gender", default=None, help="Override the document gender")
    resolve_parser.add_argument(
        "--mapping", default=None, help="Gender mapping table (YAML or JSON)"
    )
    resolve_parser.add_argument(
        "--style",
        choices=[style.value for style in AvatarStyle],
        default=None,
        help="Avatar style (default: resolution.default_style)",
    )
    resolve_parser.add_argument(
        "--no-refine", action="store_true", help="Skip the refinement service round trip"
    )
    resolve_parser.add_argument(
        "--bones", default=None, help="Bone-name list; also compute bone scale targets"
    )
    resolve_parser.add_argument(
        "--targets", default=None, help="Morph-target name list; stream onto an in-memory mesh"
    )
    resolve_parser.set_defaults(handler=_cmd_resolve)

    # bones ---------------------------------------------------------------
    bones_parser = subparsers.add_parser(
        "bones",
        parents=[common],
        help="Compute bone scale targets from limb masses and shape values",
        description=(
            "Read limb masses and shape values (a resolve --json output is accepted)\n"
            "and print one scale target per affected bone.\n\n"
            "Examples:\n"
            "  avatar-morph bones result.json --bones bones.txt\n"
            "  avatar-morph bones result.json --bones bones.txt --bone-mapping rig.yaml\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    bones_parser.add_argument("input", help="JSON document with limb_masses and shape_values")
    bones_parser.add_argument("--bones", required=True, help="Bone-name list, one per line")
    bones_parser.add_argument(
        "--bone-mapping", default=None, help="Bone mapping document (YAML or JSON)"
    )
    bones_parser.set_defaults(handler=_cmd_bones)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file and env.\n"
            "Sensitive values are redacted.\n\n"
            "Examples:\n"
            "  avatar-morph config\n"
            "  avatar-morph config --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_resolve(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _configure_logging(config, args)

    payload = dict(_read_json_object(Path(args.input)))
    if args.gender is not None:
        payload["gender"] = args.gender
    if args.style is not None:
        payload["style"] = args.style
    if args.no_refine:
        payload["refine"] = False
    payload.setdefault("request_id", Path(args.input).stem)

    try:
        request = ResolutionRequest.from_payload(payload)
    except ValueError as exc:
        raise CLIError(f"invalid scan document {args.input}: {exc}") from exc

    mapping_path = args.mapping or _resolution_path(config, "mapping_path")
    bone_names = _read_name_list(Path(args.bones)) if args.bones else None
    target_names = _read_name_list(Path(args.targets)) if args.targets else None

    resolver = _build_resolver(
        config,
        mapping=_load_mapping(mapping_path),
        bone_mapping=_load_bones(_resolution_path(config, "bone_mapping_path"))
        if bone_names is not None
        else None,
    )
    try:
        applied, mesh_values = asyncio.run(
            _resolve_and_apply(resolver, request, bone_names=bone_names, target_names=target_names)
        )
    except SchemaValidationError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.SCHEMA_ERROR)) from exc
    except EmptyInputError as exc:
        raise CLIError(str(exc)) from exc

    output: dict[str, object] = {"command": "resolve", **applied.result.to_dict()}
    if bone_names is not None:
        output["bone_scales"] = [target.to_dict() for target in applied.bone_scales]
    if mesh_values is not None:
        output["mesh"] = dict(sorted(mesh_values.items()))
        output["stream"] = applied.stream.state().to_dict() if applied.stream else None

    if args.json:
        _emit_json(output)
        return 0

    metadata = applied.result.metadata
    print(f"request: {applied.result.request_id} ({applied.result.gender})")
    print(f"strategy: {metadata.strategy} (confidence {metadata.confidence:.3f})")
    print(f"ai refined: {'yes' if metadata.ai_refined else 'no'}")
    if metadata.refinement_failure:
        print(f"refinement failure: {metadata.refinement_failure}")
    print(f"mapping version: {metadata.mapping_version}")
    print("shape values:")
    for key, value in sorted(applied.result.parameters.shape_values.items()):
        print(f"  {key}: {value:.4f}")
    print("limb masses:")
    for key, value in sorted(applied.result.parameters.limb_masses.items()):
        print(f"  {key}: {value:.4f}")
    if bone_names is not None:
        _print_bone_scales(output["bone_scales"])
    return 0


def _cmd_bones(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _configure_logging(config, args)

    document = _read_json_object(Path(args.input))
    parameters = document.get("parameters")
    source = parameters if isinstance(parameters, Mapping) else document
    limb_masses = _number_map(source.get("limb_masses"), "limb_masses")
    shape_values = _number_map(source.get("shape_values"), "shape_values")
    bone_names = _read_name_list(Path(args.bones))

    bone_mapping_path = args.bone_mapping or _resolution_path(config, "bone_mapping_path")
    scaler = BoneScaler(_load_bones(bone_mapping_path))
    targets = scaler.compute_bone_scales(limb_masses, shape_values, bone_names)
    rendered = [target.to_dict() for target in targets]

    if args.json:
        _emit_json({"command": "bones", "rig_id": scaler.config.rig_id, "bone_scales": rendered})
        return 0

    print(f"rig: {scaler.config.rig_id} ({len(rendered)} bones)")
    _print_bone_scales(rendered)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = redact_config(config)

    if args.json:
        _emit_json({"command": "config", "config": redacted})
        return 0

    print(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers: wiring
# ---------------------------------------------------------------------------


async def _resolve_and_apply(
    resolver: MorphologyResolver,
    request: ResolutionRequest,
    *,
    bone_names: Sequence[str] | None,
    target_names: Sequence[str] | None,
) -> tuple[AppliedResolution, dict[str, float] | None]:
    result = await resolver.resolve(request)
    mesh = InMemoryMorphMesh(target_names) if target_names is not None else None
    applied = resolver.apply(result, mesh=mesh, bone_names=bone_names)
    if applied.stream is not None:
        await applied.stream.wait()
    return applied, mesh.snapshot() if mesh is not None else None


def _build_resolver(
    config: Mapping[str, Any],
    *,
    mapping: GenderMappingTable,
    bone_mapping: BoneMappingConfig | None,
) -> MorphologyResolver:
    resolution = config["resolution"]
    return MorphologyResolver(
        mapping,
        blender=Blender(BlendSettings.from_config(config["blending"])),
        refinement_client=_build_refinement_client(config),
        bone_scaler=BoneScaler(bone_mapping) if bone_mapping is not None else None,
        stream_orchestrator=StreamOrchestrator(StreamSettings.from_config(config["streaming"])),
        settings=ResolutionSettings(
            default_style=AvatarStyle(resolution["default_style"]),
            refine_enabled=bool(resolution["refine_enabled"]),
        ),
    )


def _build_refinement_client(config: Mapping[str, Any]) -> RefinementClient | None:
    section = config["refinement"]
    if not section["enabled"]:
        return None
    secret = resolve_secret(config)
    headers = {"Authorization": f"Bearer {secret}"} if secret is not None else None
    transport = HttpRefinementTransport(
        section["base_url"],
        endpoint=section["endpoint"],
        timeout_seconds=section["timeout_seconds"],
        headers=headers,
    )
    backoff = BackoffConfig(
        max_retries=section["max_retries"],
        initial_delay_seconds=section["initial_delay_seconds"],
        multiplier=section["multiplier"],
        max_delay_seconds=section["max_delay_seconds"],
        jitter_ratio=section["jitter_ratio"],
    )
    return RefinementClient(transport, backoff=backoff)


def _configure_logging(config: Mapping[str, Any], args: argparse.Namespace) -> None:
    logging_config = LoggingConfig.from_config(config["observability"])
    # stderr carries warnings and the error line only, unless --verbose.
    level = "DEBUG" if args.verbose else max(
        parse_log_level(logging_config.level), parse_log_level("WARNING")
    )
    configure_logging(
        LoggingConfig(
            level=level,
            format=logging_config.format,
            redact_secrets=logging_config.redact_secrets,
        )
    )
    structlog.get_logger(__name__).debug("cli_logging_configured", command=args.command)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(args.config_path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _load_mapping(path: str | None) -> GenderMappingTable:
    try:
        return load_mapping_table(path) if path is not None else default_mapping_table()
    except InvalidMappingError as exc:
        raise CLIError(str(exc)) from exc


def _load_bones(path: str | None) -> BoneMappingConfig:
    try:
        return load_bone_mapping(path) if path is not None else default_bone_mapping()
    except BoneMappingError as exc:
        raise CLIError(str(exc)) from exc


def _resolution_path(config: Mapping[str, Any], key: str) -> str | None:
    value = config["resolution"].get(key)
    return value if isinstance(value, str) else None


# ---------------------------------------------------------------------------
# Helpers: input and output
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _print_bone_scales(rendered: object) -> None:
    if not isinstance(rendered, list):
        return
    print("bone scales:")
    for item in rendered:
        axis = ", ".join(f"{value:.4f}" for value in item["axis_scale"])
        print(f"  {item['bone_id']}: {item['scale_factor']:.4f} [{axis}] <- {item['source_key']}")


def _read_json_object(path: Path) -> Mapping[str, object]:
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"unable to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CLIError(f"invalid JSON in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise CLIError(f"{path}: document root must be an object")
    return loaded


def _read_name_list(path: Path) -> list[str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise CLIError(f"unable to read {path}: {exc}") from exc
    return [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]


def _number_map(value: object, name: str) -> dict[str, float]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise CLIError(f"{name} must be an object")
    return {
        str(key): float(item)
        for key, item in value.items()
        if isinstance(item, (int, float)) and not isinstance(item, bool)
    }


__all__ = ["CLIError", "build_parser", "run_cli"]
