"""
Best-effort playlist binding for legacy devices still running a layout.

Not used by the deterministic publish path, which forces playlist mode instead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from signage.device_api.client import DeviceApiClient


@dataclass
class RegionBindResult:
    ok: bool
    action: str  # no_change, updated, failed
    region_index: Optional[int] = None
    verified: bool = False
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)


def pick_ads_region(regions: List[dict]) -> Optional[int]:
    """Index of the largest region not bound to a widget."""
    best_index, best_area = None, 0
    for index, region in enumerate(regions):
        item = region.get("item") or {}
        if item.get("type") == "widget":
            continue
        area = (region.get("width") or 0) * (region.get("height") or 0)
        if area > best_area:
            best_index, best_area = index, area
    return best_index


def ensure_ads_region_bound(
    client: DeviceApiClient,
    layout_id: int,
    playlist_id: int,
    region_index: Optional[int] = None,
) -> RegionBindResult:
    logs: List[str] = []
    resp = client.get_layout(layout_id)
    if not resp.ok or not isinstance(resp.data, dict):
        return RegionBindResult(ok=False, action="failed", error=f"LAYOUT_FETCH_FAILED: {resp.error}", logs=logs)

    regions = resp.data.get("regions") or []
    if not regions:
        return RegionBindResult(ok=False, action="failed", error="LAYOUT_NO_REGIONS", logs=logs)

    if region_index is None:
        region_index = pick_ads_region(regions)
        if region_index is None:
            return RegionBindResult(ok=False, action="failed", error="ADS_REGION_MAPPING_MISSING", logs=logs)
        logs.append(f"[LayoutBind] Auto-detected ads region {region_index}")
    elif not 0 <= region_index < len(regions):
        return RegionBindResult(ok=False, action="failed", error="ADS_REGION_INDEX_INVALID", logs=logs)

    current = regions[region_index].get("item") or {}
    if current.get("type") == "playlist" and current.get("id") == playlist_id:
        logs.append(f"[LayoutBind] Region {region_index} already bound to playlist {playlist_id}")
        return RegionBindResult(ok=True, action="no_change", region_index=region_index, verified=True, logs=logs)

    updated = []
    for index, region in enumerate(regions):
        region = dict(region)
        if "rotation" in region:
            # The layout endpoint rejects integer rotations
            region["rotation"] = float(region["rotation"] or 0)
        if index == region_index:
            region["item"] = {"type": "playlist", "id": playlist_id}
        updated.append(region)

    patch = client.patch_layout(layout_id, {"regions": updated})
    if not patch.ok:
        return RegionBindResult(
            ok=False, action="failed", region_index=region_index, error=f"LAYOUT_PATCH_FAILED: {patch.error}", logs=logs
        )

    verify = client.get_layout(layout_id)
    verified = False
    if verify.ok and isinstance(verify.data, dict):
        after = verify.data.get("regions") or []
        if region_index < len(after):
            verified = ((after[region_index] or {}).get("item") or {}).get("id") == playlist_id
    if not verified:
        logger.warning(f"[LAYOUT] Layout {layout_id} region {region_index} update sent but not verified")
    logs.append(f"[LayoutBind] Region {region_index} -> playlist {playlist_id} verified={verified}")
    return RegionBindResult(ok=True, action="updated", region_index=region_index, verified=verified, logs=logs)
