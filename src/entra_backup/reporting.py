"""Human-readable descriptions of backed up applications.

Nothing here affects what gets restored; names are looked up through a
``DirectoryNameResolver`` handed in by the caller.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import AppRoleAssignment, BackupBundle
from .resolver import DirectoryNameResolver

ProgressCallback = Callable[[str], None]


def notify(progress: Optional[ProgressCallback], message: str) -> None:
    if progress is not None:
        progress(message)


def format_resource_access(
    access: Sequence[Dict[str, Any]], resolver: Optional[DirectoryNameResolver] = None
) -> str:
    names = []
    for entry in access or []:
        resource_app_id = entry.get("resourceAppId")
        if not resource_app_id:
            continue
        names.append(resolver.application(resource_app_id) if resolver else resource_app_id)
    return ", ".join(names)


def format_api_settings(api: Optional[Dict[str, Any]]) -> str:
    if not api:
        return ""
    settings = []
    if api.get("oauth2PermissionScopes"):
        settings.append(f"Scopes: {len(api['oauth2PermissionScopes'])}")
    if api.get("preAuthorizedApplications"):
        settings.append(f"Pre-authorized apps: {len(api['preAuthorizedApplications'])}")
    if api.get("requestedAccessTokenVersion") is not None:
        settings.append(f"Token version: {api['requestedAccessTokenVersion']}")
    return ", ".join(settings)


def format_app_roles(roles: Sequence[Dict[str, Any]]) -> str:
    return ", ".join(str(role.get("displayName") or role.get("id")) for role in roles or [])


def format_info(info: Optional[Dict[str, Any]]) -> str:
    if not info:
        return ""
    labels = (
        ("marketingUrl", "Marketing"),
        ("privacyStatementUrl", "Privacy"),
        ("supportUrl", "Support"),
        ("termsOfServiceUrl", "Terms"),
    )
    return ", ".join(f"{label}: {info[key]}" for key, label in labels if info.get(key))


def format_assignments(
    assignments: Sequence[AppRoleAssignment], resolver: Optional[DirectoryNameResolver] = None
) -> str:
    parts = []
    for assignment in assignments:
        kind = (assignment.principal_type or "").lower()
        name = assignment.principal_display_name
        if resolver is not None and assignment.principal_id:
            if kind == "user":
                name = resolver.user(assignment.principal_id)
            elif kind == "group":
                name = resolver.group(assignment.principal_id)
        parts.append(f"{name or assignment.principal_id} ({kind or 'unknown'})")
    return ", ".join(parts)


def describe_bundle(bundle: BackupBundle, resolver: Optional[DirectoryNameResolver] = None) -> Dict[str, Any]:
    application = bundle.application
    principal = bundle.service_principal
    return {
        "displayName": bundle.display_name,
        "appId": application.app_id,
        "backupDate": bundle.backup_date.isoformat() if bundle.backup_date else None,
        "signInAudience": application.sign_in_audience,
        "servicePrincipal": (principal.display_name or principal.id) if principal else "missing",
        "singleSignOn": principal.preferred_single_sign_on_mode if principal else None,
        "secrets": len(bundle.secrets),
        "certificates": len(bundle.certificates),
        "synchronization": bundle.sync_job is not None or bundle.sync_template is not None,
        "requiredResourceAccess": format_resource_access(application.required_resource_access, resolver),
        "api": format_api_settings(application.api),
        "appRoles": format_app_roles(application.app_roles),
        "info": format_info(application.info),
        "assignments": format_assignments(bundle.app_role_assignments, resolver),
    }


def describe_bundles(
    bundles: Sequence[BackupBundle], resolver: Optional[DirectoryNameResolver] = None
) -> List[Dict[str, Any]]:
    return [describe_bundle(bundle, resolver) for bundle in bundles]
