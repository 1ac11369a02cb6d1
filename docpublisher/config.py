"""
ConfigResolver - validates and normalizes connection settings.

The configuration record is a JSON object with camelCase keys. Environment
variables override file values field for field; validation collects every
violation instead of stopping at the first one.
"""
import copy
import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .errors import ConfigurationError, FieldError
from .models import AuthMethod, OAuth2Settings, PublishingOptions, RepositoryConnection

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "docpublisher.json"
DEFAULT_LIBRARY = "Documents"
DEFAULT_REDIRECT_URI = "http://localhost:3000/auth/callback"
DEFAULT_SCOPES = [
    "https://graph.microsoft.com/Sites.ReadWrite.All",
    "https://graph.microsoft.com/Files.ReadWrite.All",
    "https://graph.microsoft.com/User.Read",
]
METADATA_SCOPE = "https://graph.microsoft.com/Sites.Manage.All"

REQUIRED_FIELDS = ("tenantId", "clientId", "repositoryAddress", "libraryName")
BOOLEAN_OPTIONS = ("enableVersioning", "createFolders", "overwriteExisting", "addMetadata")
PEM_SUFFIXES = {".pem", ".key", ".crt", ".cer"}

# Record path -> environment variables, first one set wins
ENV_OVERRIDES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("authMethod",), ("SHAREPOINT_AUTH_METHOD",)),
    (("tenantId",), ("SHAREPOINT_TENANT_ID", "AZURE_TENANT_ID")),
    (("clientId",), ("SHAREPOINT_CLIENT_ID", "AZURE_CLIENT_ID")),
    (("clientSecret",), ("SHAREPOINT_CLIENT_SECRET", "AZURE_CLIENT_SECRET")),
    (("certificatePath",), ("SHAREPOINT_CERTIFICATE_PATH",)),
    (("certificateThumbprint",), ("SHAREPOINT_CERTIFICATE_THUMBPRINT",)),
    (("repositoryAddress",), ("SHAREPOINT_SITE_URL",)),
    (("libraryName",), ("SHAREPOINT_DOCUMENT_LIBRARY",)),
    (("rootFolderPath",), ("SHAREPOINT_ROOT_FOLDER",)),
    (("oauth2", "redirectUri"), ("SHAREPOINT_REDIRECT_URI",)),
    (("oauth2", "scopes"), ("SHAREPOINT_SCOPES",)),
    (("oauth2", "authority"), ("SHAREPOINT_AUTHORITY",)),
    (("publishingOptions", "maxConcurrency"), ("SHAREPOINT_MAX_CONCURRENCY",)),
)


@dataclass
class ValidationReport:
    """Every violation found in a record, plus advisory warnings."""
    errors: List[FieldError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    auth_method: Optional[AuthMethod] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, field_name: str, message: str) -> None:
        self.errors.append(FieldError(field_name, message))

    def fields(self) -> List[str]:
        return [e.field for e in self.errors]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_env_value(path: Tuple[str, ...], raw: str) -> Any:
    if path == ("oauth2", "scopes"):
        return [scope.strip() for scope in raw.split(",") if scope.strip()]
    if path == ("publishingOptions", "maxConcurrency"):
        try:
            return int(raw)
        except ValueError:
            # Left as text so validation reports it
            return raw
    return raw


def infer_auth_method(record: Mapping[str, Any]) -> Optional[str]:
    """
    Return the declared auth method, or infer one from the credentials present.

    An ``oauth2`` block implies oauth2, a client secret implies a service
    principal and a certificate path implies certificate auth.
    """
    declared = record.get("authMethod")
    if not _is_blank(declared):
        return str(declared).strip()
    if isinstance(record.get("oauth2"), Mapping):
        return AuthMethod.OAUTH2.value
    if not _is_blank(record.get("clientSecret")):
        return AuthMethod.SERVICE_PRINCIPAL.value
    if not _is_blank(record.get("certificatePath")):
        return AuthMethod.CERTIFICATE.value
    return None


def _needs_thumbprint(certificate_path: str) -> bool:
    return Path(certificate_path).suffix.lower() in PEM_SUFFIXES


class ConfigResolver:
    """
    Turns a configuration record into a RepositoryConnection.

    No network calls are made. The environment mapping is injectable so that
    precedence can be tested without touching the process environment.

    Usage:
        resolver = ConfigResolver()
        connection = resolver.load(Path("docpublisher.json"))
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    # ------------------------------------------------------------------ files

    def load_file(self, path: Path) -> Dict[str, Any]:
        """Read the JSON record. A missing file yields an empty record."""
        path = Path(path)
        if not path.exists():
            logger.debug(f"No configuration file at {path}, using environment only")
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                [FieldError("configFile", f"{path} is not valid JSON: {e}")]
            ) from e
        except OSError as e:
            raise ConfigurationError([FieldError("configFile", f"cannot read {path}: {e}")]) from e
        if not isinstance(data, dict):
            raise ConfigurationError([FieldError("configFile", f"{path} must contain a JSON object")])
        return data

    def write_file(self, path: Path, record: Mapping[str, Any]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
            f.write("\n")
        logger.info(f"Configuration written to {path}")
        return path

    def template(self) -> Dict[str, Any]:
        """Starter record, prefilled from the environment where possible."""
        env = self._env
        return {
            "authMethod": AuthMethod.OAUTH2.value,
            "tenantId": env("SHAREPOINT_TENANT_ID", "AZURE_TENANT_ID") or "",
            "clientId": env("SHAREPOINT_CLIENT_ID", "AZURE_CLIENT_ID") or "",
            "repositoryAddress": env("SHAREPOINT_SITE_URL") or "",
            "libraryName": env("SHAREPOINT_DOCUMENT_LIBRARY") or DEFAULT_LIBRARY,
            "rootFolderPath": env("SHAREPOINT_ROOT_FOLDER") or "",
            "oauth2": {
                "redirectUri": env("SHAREPOINT_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
                "scopes": list(DEFAULT_SCOPES),
            },
            "publishingOptions": {
                "enableVersioning": True,
                "createFolders": True,
                "overwriteExisting": True,
                "addMetadata": True,
                "maxConcurrency": 3,
            },
            "defaultTags": ["docpublisher-generated", "documentation"],
            "defaultMetadata": {},
        }

    # ------------------------------------------------------------ environment

    def _env(self, *names: str) -> Optional[str]:
        for name in names:
            value = self._environ.get(name)
            if value:
                return value
        return None

    def apply_environment(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of `record` with environment values taking precedence."""
        merged = copy.deepcopy(dict(record))
        for path, names in ENV_OVERRIDES:
            raw = self._env(*names)
            if raw is None:
                continue
            target = merged
            for key in path[:-1]:
                if not isinstance(target.get(key), dict):
                    target[key] = {}
                target = target[key]
            target[path[-1]] = _parse_env_value(path, raw)
            logger.debug(f"Configuration field {'.'.join(path)} taken from environment")
        return merged

    def environment_status(self) -> Dict[str, bool]:
        """Which override variables are set, by name."""
        return {name: bool(self._environ.get(name)) for _, names in ENV_OVERRIDES for name in names}

    def recommended_scopes(self, record: Mapping[str, Any]) -> List[str]:
        scopes = list(DEFAULT_SCOPES)
        options = record.get("publishingOptions")
        if not isinstance(options, Mapping) or options.get("addMetadata", True):
            scopes.append(METADATA_SCOPE)
        return scopes

    # ------------------------------------------------------------- validation

    def validate(self, record: Mapping[str, Any]) -> ValidationReport:
        """Collect every violation in `record`. Never raises."""
        report = ValidationReport()

        for name in REQUIRED_FIELDS:
            if _is_blank(record.get(name)):
                report.error(name, "is required")

        method = infer_auth_method(record)
        if method is None:
            report.error("authMethod", "is required (oauth2, service-principal or certificate)")
        else:
            try:
                report.auth_method = AuthMethod(method)
            except ValueError:
                allowed = ", ".join(m.value for m in AuthMethod)
                report.error("authMethod", f"'{method}' is not one of: {allowed}")

        if report.auth_method == AuthMethod.OAUTH2:
            self._validate_oauth2(record.get("oauth2"), report)
        elif report.auth_method == AuthMethod.SERVICE_PRINCIPAL:
            if _is_blank(record.get("clientSecret")):
                report.error("clientSecret", "is required for service-principal authentication")
        elif report.auth_method == AuthMethod.CERTIFICATE:
            certificate_path = record.get("certificatePath")
            if _is_blank(certificate_path):
                report.error("certificatePath", "is required for certificate authentication")
            elif _needs_thumbprint(str(certificate_path)) and _is_blank(
                record.get("certificateThumbprint")
            ):
                report.error("certificateThumbprint", "is required for PEM certificates")

        address = record.get("repositoryAddress")
        if not _is_blank(address):
            url = urlparse(str(address))
            if url.scheme not in ("http", "https") or not url.netloc:
                report.error("repositoryAddress", "must be an absolute http(s) URL")
            elif url.scheme != "https":
                report.warnings.append("Repository address does not use https")

        self._validate_publishing(record.get("publishingOptions"), report)

        tags = record.get("defaultTags")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
        ):
            report.error("defaultTags", "must be a list of strings")
        elif not tags:
            report.warnings.append(
                "No default tags configured - consider adding tags for better document organization"
            )

        metadata = record.get("defaultMetadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            report.error("defaultMetadata", "must be an object")

        return report

    @staticmethod
    def _validate_oauth2(block: Any, report: ValidationReport) -> None:
        if block is None:
            report.error("oauth2", "is required for oauth2 authentication")
            return
        if not isinstance(block, Mapping):
            report.error("oauth2", "must be an object")
            return
        if _is_blank(block.get("redirectUri")):
            report.error("oauth2.redirectUri", "is required for oauth2 authentication")
        scopes = block.get("scopes")
        if not isinstance(scopes, list) or not [s for s in scopes if isinstance(s, str) and s.strip()]:
            report.error("oauth2.scopes", "must be a non-empty list of scopes")

    @staticmethod
    def _validate_publishing(options: Any, report: ValidationReport) -> None:
        if options is None:
            return
        if not isinstance(options, Mapping):
            report.error("publishingOptions", "must be an object")
            return
        for name in BOOLEAN_OPTIONS:
            if name in options and not isinstance(options[name], bool):
                report.error(f"publishingOptions.{name}", "must be true or false")
        if "maxConcurrency" in options:
            value = options["maxConcurrency"]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                report.error("publishingOptions.maxConcurrency", "must be a positive integer")
        if options.get("enableVersioning") is False:
            report.warnings.append(
                "Document versioning is disabled - consider enabling for better document management"
            )

    # -------------------------------------------------------------- resolution

    def resolve(self, record: Mapping[str, Any]) -> RepositoryConnection:
        """
        Build a RepositoryConnection from a record.

        Raises:
            ConfigurationError: listing every violation at once.
        """
        report = self.validate(record)
        if not report.valid:
            raise ConfigurationError(report.errors)
        for warning in report.warnings:
            logger.warning(warning)

        method = report.auth_method
        oauth2 = None
        block = record.get("oauth2")
        if method == AuthMethod.OAUTH2:
            oauth2 = OAuth2Settings(
                redirect_uri=block["redirectUri"],
                scopes=tuple(s.strip() for s in block["scopes"] if isinstance(s, str) and s.strip()),
                authority=block.get("authority")
                or f"https://login.microsoftonline.com/{record['tenantId']}",
            )

        options = record.get("publishingOptions") or {}
        publishing = PublishingOptions(
            enable_versioning=options.get("enableVersioning", True),
            create_folders=options.get("createFolders", True),
            overwrite_existing=options.get("overwriteExisting", True),
            add_metadata=options.get("addMetadata", True),
            max_concurrency=options.get("maxConcurrency", 3),
        )

        return RepositoryConnection(
            auth_method=method,
            tenant_id=str(record["tenantId"]).strip(),
            client_id=str(record["clientId"]).strip(),
            repository_address=str(record["repositoryAddress"]).strip().rstrip("/"),
            library_name=str(record["libraryName"]).strip(),
            root_folder_path=str(record.get("rootFolderPath") or "").strip("/"),
            client_secret=record.get("clientSecret") or None,
            certificate_path=record.get("certificatePath") or None,
            certificate_thumbprint=record.get("certificateThumbprint") or None,
            oauth2=oauth2,
            publishing=publishing,
            default_tags=tuple(record.get("defaultTags") or ()),
            default_metadata=dict(record.get("defaultMetadata") or {}),
        )

    def load(self, path: Optional[Path] = None) -> RepositoryConnection:
        """load_file + apply_environment + resolve."""
        record = self.load_file(Path(path) if path else Path(DEFAULT_CONFIG_FILE))
        return self.resolve(self.apply_environment(record))


def with_overrides(
    connection: RepositoryConnection,
    max_concurrency: Optional[int] = None,
    overwrite_existing: Optional[bool] = None,
    add_metadata: Optional[bool] = None,
) -> PublishingOptions:
    """Publishing options of `connection` with command-line overrides applied."""
    changes: Dict[str, Any] = {}
    if max_concurrency is not None:
        changes["max_concurrency"] = max_concurrency
    if overwrite_existing is not None:
        changes["overwrite_existing"] = overwrite_existing
    if add_metadata is not None:
        changes["add_metadata"] = add_metadata
    return replace(connection.publishing, **changes)
