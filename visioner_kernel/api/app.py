"""
Visioner Kernel API — FastAPI endpoints.

Exposes the rule element kernel to a host process:
- Token ingestion and flag/ledger inspection
- Effect lifecycle (create, update, delete) and encounter hooks
- Perception and cover queries
- Hide/Sneak prerequisite checks
- Preset catalog and kernel configuration
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from visioner_kernel.catalog.presets import build_preset_item, get_preset, list_presets
from visioner_kernel.models.config import KernelConfig
from visioner_kernel.models.rule_element import EffectItem
from visioner_kernel.models.scene import TokenState
from visioner_kernel.models.states import EncounterEvent, StateType
from visioner_kernel.operations.lighting import get_effective_lighting
from visioner_kernel.operations.off_guard import get_suppressed_states
from visioner_kernel.operations.senses import get_detection_mode_capabilities, get_sense_capabilities
from visioner_kernel.rule_element.service import RuleElementService


# --- Request/Response Models ---

class EffectCreateRequest(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    slug: Optional[str] = None
    rules: List[Dict[str, Any]] = []
    preset: Optional[str] = None


class EffectUpdateRequest(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    rules: List[Dict[str, Any]] = []


class SelectionRequest(BaseModel):
    controlled: List[str] = []
    targeted: List[str] = []


# --- Application Factory ---

def create_app(service: Optional[RuleElementService] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Visioner Kernel API",
        description="Rule element engine for per-pair perception overrides",
        version="0.1.0",
    )

    svc = service or RuleElementService()
    app.state.service = svc

    def _token_or_404(token_id: str) -> TokenState:
        token = svc.scene.get_token(token_id)
        if token is None:
            raise HTTPException(404, "Token not found")
        return token

    # === TOKENS ===

    @app.post("/tokens")
    def upsert_token(token: TokenState):
        """Ingest or replace a token."""
        svc.scene.upsert_token(token)
        return {"status": "ingested", "token_id": token.id}

    @app.get("/tokens/{token_id}")
    def get_token(token_id: str):
        token = _token_or_404(token_id)
        return {
            "token": token.to_wire(),
            "effects": [item.id for item in svc.list_effects(token_id)],
            "lighting": get_effective_lighting(svc.flags, token_id, svc.config.default_lighting),
            "senses": get_sense_capabilities(token),
            "detectionModes": get_detection_mode_capabilities(token),
            "offGuardSuppressed": get_suppressed_states(svc.flags, token_id),
        }

    @app.get("/tokens/{token_id}/flags")
    def get_flags(token_id: str):
        _token_or_404(token_id)
        return svc.flags.get_all(token_id)

    @app.get("/tokens/{token_id}/sources")
    def get_sources(token_id: str, state_type: StateType = StateType.VISIBILITY, observer_id: Optional[str] = None):
        _token_or_404(token_id)
        if observer_id is None:
            sources = svc.ledger.get_all_sources(token_id, state_type.value)
        else:
            sources = svc.ledger.get_sources(token_id, state_type.value, observer_id)
        return [s.to_wire() for s in sources]

    @app.post("/scene/selection")
    def set_selection(req: SelectionRequest):
        """Set the controlled and targeted token ids used by selectors."""
        svc.scene.set_controlled(req.controlled)
        svc.scene.set_targeted(req.targeted)
        return {"controlled": sorted(req.controlled), "targeted": sorted(req.targeted)}

    # === EFFECTS ===

    @app.post("/tokens/{token_id}/effects")
    def create_effect(token_id: str, req: EffectCreateRequest):
        """Attach an effect (explicit rules or a preset) to a token."""
        _token_or_404(token_id)
        if req.preset is not None:
            item = build_preset_item(req.preset, req.id)
            if item is None:
                raise HTTPException(404, "Preset not found")
        else:
            if not req.id or not req.name:
                raise HTTPException(422, "Effect id and name are required without a preset")
            item = EffectItem(id=req.id, name=req.name, slug=req.slug, rules=req.rules)

        elements = svc.create_effect(token_id, item)
        return {
            "item_id": item.id,
            "rule_elements": [e.rule_element_id for e in elements],
        }

    @app.put("/tokens/{token_id}/effects/{item_id}")
    def update_effect(token_id: str, item_id: str, req: EffectUpdateRequest):
        _token_or_404(token_id)
        existing = svc.get_effect(token_id, item_id)
        if existing is None:
            raise HTTPException(404, "Effect not found")
        item = EffectItem(
            id=item_id,
            name=req.name or existing.name,
            slug=req.slug or existing.slug,
            rules=req.rules,
        )
        elements = svc.update_effect(token_id, item) or []
        return {
            "item_id": item_id,
            "rule_elements": [e.rule_element_id for e in elements],
        }

    @app.delete("/tokens/{token_id}/effects/{item_id}")
    def delete_effect(token_id: str, item_id: str):
        if not svc.delete_effect(token_id, item_id):
            raise HTTPException(404, "Effect not found")
        return {"status": "deleted", "item_id": item_id}

    @app.post("/tokens/{token_id}/encounter/{event}")
    def encounter_event(token_id: str, event: EncounterEvent):
        """Turn start/end hook: refresh the token's rule elements."""
        _token_or_404(token_id)
        refreshed = svc.handle_encounter_event(token_id, event)
        return {"event": event.value, "refreshed": refreshed}

    # === PERCEPTION ===

    @app.get("/perception/{observer_id}/{target_id}")
    def get_perception(observer_id: str, target_id: str):
        observer = _token_or_404(observer_id)
        target = _token_or_404(target_id)
        result = svc.checker.resolve(observer, target)
        return {
            "visibility": svc.maps.get_visibility_between(observer_id, target_id),
            "ruleElement": result.to_wire() if result else None,
            "all": [r.to_wire() for r in svc.checker.get_all(observer, target)],
        }

    @app.get("/cover/{attacker_id}/{target_id}")
    def get_cover(attacker_id: str, target_id: str):
        attacker = _token_or_404(attacker_id)
        target = _token_or_404(target_id)
        pinned = svc.cover.get_cover_from_rule_elements(attacker, target)
        return {
            "cover": svc.maps.get_cover_between(attacker_id, target_id),
            "ruleElement": pinned.to_wire() if pinned else None,
        }

    # === STEALTH PREREQUISITES ===

    @app.get("/tokens/{token_id}/hide")
    def hide_prerequisites(token_id: str):
        _token_or_404(token_id)
        return svc.qualifications.check_hide_prerequisites(token_id).to_wire()

    @app.get("/tokens/{token_id}/sneak")
    def sneak_prerequisites(token_id: str, position: str = "end"):
        _token_or_404(token_id)
        if position not in ("start", "end"):
            raise HTTPException(422, "position must be 'start' or 'end'")
        return svc.qualifications.check_sneak_prerequisites(token_id, position).to_wire()

    # === PRESETS ===

    @app.get("/presets")
    def presets():
        return list_presets()

    @app.get("/presets/{key}")
    def preset(key: str):
        data = get_preset(key)
        if data is None:
            raise HTTPException(404, "Preset not found")
        return data

    # === CONFIG ===

    @app.get("/config")
    def get_config():
        return svc.config.model_dump(mode="json")

    @app.put("/config")
    def update_config(config: KernelConfig):
        svc.update_config(config)
        return config.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
