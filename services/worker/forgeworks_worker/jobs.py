import io, logging, re, zipfile
from pathlib import Path
from string import Template

from forgeworks_common.db import DeployCache, cache_key, operation_key
from forgeworks_common.errors import AlreadyExists, ArtifactNotFound, InvalidRequest, TransportError
from forgeworks_common.schemas import ArtifactKind, BuildRequest, DeploymentEvent
from forgeworks_common.storage import LocalObjectStore
from forgeworks_common.utils import utc_now_iso

from .state import JobContext

logger = logging.getLogger(__name__)

TEMPLATES_ROOT = Path(__file__).parent / "templates"
NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,62}$")
VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
BUNDLE_RE = re.compile(r"^source-v[^/]*\.zip$")
DEPLOY_EVENT = "SERVICE_DEPLOYED"


def require_name(blueprint: dict, blueprint_type: str) -> str:
    name = blueprint.get("name")
    if not name:
        raise InvalidRequest(f"Blueprint is missing 'name' for {blueprint_type}.")
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise InvalidRequest(f"Invalid artifact name {name!r}: use letters, digits, '-' or '_'.")
    return name


def require_version(blueprint: dict) -> str:
    version = blueprint.get("version") or "latest"
    if not isinstance(version, str) or not VERSION_RE.match(version):
        raise InvalidRequest(f"Invalid version {version!r}.")
    return version


def render_template(kind: ArtifactKind, name: str, templates_root: Path = TEMPLATES_ROOT) -> dict:
    src = templates_root / kind.value
    if not src.exists():
        raise RuntimeError(f"Template not found: {kind.value}")
    files = {}
    for item in sorted(src.rglob("*.tmpl")):
        rel = item.relative_to(src).as_posix()[: -len(".tmpl")]
        files[rel] = Template(item.read_text(encoding="utf-8")).safe_substitute(name=name)
    return files


class ScaffoldHandler:
    """Creates an artifact's initial files; never overwrites an existing artifact."""

    def __init__(self, storage: LocalObjectStore, templates_root: Path = TEMPLATES_ROOT):
        self.storage = storage
        self.templates_root = templates_root

    def __call__(self, ctx: JobContext, kind: ArtifactKind, name: str) -> dict:
        ctx.log(f"Starting scaffold for {kind.label}: {name}")
        root = kind.root(name)
        if self.storage.list(root):
            raise AlreadyExists(
                f"{kind.label.capitalize()} '{name}' already exists. Scaffolding aborted to prevent overwrite."
            )
        files = render_template(kind, name, self.templates_root)
        for rel, content in files.items():
            self.storage.write_text(root + rel, content)
        ctx.log(f"Scaffolded {kind.label} {name} ({len(files)} files).")
        return {
            "success": True,
            "message": f"Scaffolded {kind.label} {name}",
            "kind": kind.value,
            "files": sorted(root + rel for rel in files),
        }


class DeployHandler:
    """
    Packages an artifact's source (or reuses the cached bundle for the same
    target, name and version) and asks the build service to deploy it.

    The cache write happens before the build trigger and is kept when the
    trigger fails, so a retry does not repackage.
    """

    def __init__(self, storage: LocalObjectStore, cache: DeployCache, builds, region: str = "us-central1",
                 events=None, events_topic: str = None):
        self.storage = storage
        self.cache = cache
        self.builds = builds
        self.region = region
        self.events = events
        self.events_topic = events_topic

    def __call__(self, ctx: JobContext, kind: ArtifactKind, name: str, version: str = "latest") -> dict:
        ctx.log(f"Starting deployment for {kind.label}: {name}")
        target = kind.target
        key = cache_key(target, name)
        record = self.cache.get(key)
        if record and record.get("uri") and record.get("version") == version:
            uri = record["uri"]
            cached = True
            ctx.log(f"Using cached source version '{version}' for {name}: {uri}")
        else:
            ctx.log(f"Packaging new source version '{version}' for {name}...")
            uri = self.package(kind, name, version)
            cached = False
            self.cache.put(key, {"uri": uri, "updatedAt": utc_now_iso(), "version": version})
            ctx.log(f"Packaged source uploaded to: {uri}")

        ctx.log(f"Triggering build for {name}...")
        operation = self.builds.trigger(BuildRequest(name=name, target=target, source=uri, region=self.region))
        self.cache.put(operation_key(target, name), {"operation": operation, "startedAt": utc_now_iso()})
        ctx.log(f"Build started: {operation}")

        if kind is ArtifactKind.RUN_SERVICE and self.events is not None:
            self._announce(ctx, name)

        return {
            "success": True,
            "status": "build_started",
            "operation": operation,
            "type": target,
            "source": uri,
            "cached": cached,
        }

    def package(self, kind: ArtifactKind, name: str, version: str) -> str:
        root = kind.root(name)
        sources = [k for k in self.storage.list(root) if not BUNDLE_RE.match(k[len(root):])]
        if not sources:
            raise ArtifactNotFound(f"No objects under {root}; scaffold the {kind.label} first.")
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for k in sources:
                zf.writestr(k[len(root):], self.storage.read_bytes(k))
        dest = f"{root}source-v{version}.zip"
        self.storage.write_bytes(dest, buf.getvalue())
        logger.debug("Packaged %d file(s) from %s into %s", len(sources), root, dest)
        return self.storage.uri(dest)

    def _announce(self, ctx: JobContext, name: str):
        try:
            self.events.publish_json(self.events_topic, DeploymentEvent(type=DEPLOY_EVENT, name=name).model_dump())
        except TransportError as e:
            # the build is already running; a missed local-launch event does not fail the job
            logger.warning("Could not publish %s for %s: %s", DEPLOY_EVENT, name, e)
            ctx.log(f"Could not publish deployment event: {e}")
