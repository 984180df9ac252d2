"""
Preset catalog — ready-made effects expressed purely in the authored format.

Directions follow the kernel convention: "to" means others perceiving the
effect's owner, "from" means the owner perceiving others.
"""

import copy
import uuid
from typing import Any, Dict, List, Optional

from visioner_kernel.models.rule_element import RULE_ELEMENT_KEY, EffectItem

PRESETS: Dict[str, Dict[str, Any]] = {
    "blur": {
        "name": "Blur",
        "description": "Your form blurs. You are concealed to all observers, but that concealment can't be used to Hide or to end a Sneak.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "blur",
                "operations": [
                    {
                        "type": "overrideVisibility",
                        "state": "concealed",
                        "direction": "to",
                        "observers": "all",
                    },
                    {
                        "type": "modifyActionQualification",
                        "qualifications": {
                            "hide": {
                                "canUseThisConcealment": False,
                                "customMessage": "Blur's concealment doesn't allow you to Hide",
                            },
                            "sneak": {
                                "endPositionQualifies": False,
                                "customMessage": "Blur's concealment doesn't let you end a Sneak",
                            },
                        },
                    },
                ],
                "priority": 100,
            }
        ],
    },
    "faerie-fire": {
        "name": "Faerie Fire",
        "description": "Outlined in light. Invisible creatures are merely concealed; visible ones can't be concealed.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "faerie-fire",
                "operations": [
                    {
                        "type": "conditionalState",
                        "condition": "invisible",
                        "thenState": "concealed",
                        "elseState": "observed",
                        "stateType": "visibility",
                        "direction": "to",
                        "observers": "all",
                        "priority": 110,
                    }
                ],
                "priority": 110,
            }
        ],
    },
    "see-invisibility": {
        "name": "See Invisibility",
        "description": "Invisible creatures appear to you as translucent shapes; they are concealed instead of undetected.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "see-invisibility",
                "operations": [
                    {
                        "type": "overrideVisibility",
                        "state": "concealed",
                        "direction": "from",
                        "observers": "all",
                        "predicate": ["target:condition:invisible"],
                    }
                ],
                "priority": 100,
            }
        ],
    },
    "blind-fight": {
        "name": "Blind-Fight",
        "description": "Undetected creatures within 5 feet are merely hidden to you.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "blind-fight",
                "operations": [
                    {
                        "type": "overrideVisibility",
                        "fromStates": ["undetected"],
                        "toState": "hidden",
                        "direction": "from",
                        "observers": "all",
                        "range": 5,
                    },
                    {
                        "type": "modifyActionQualification",
                        "qualifications": {
                            "seek": {
                                "ignoreThisConcealment": True,
                                "customMessage": "Blind-Fight lets you ignore concealment",
                            }
                        },
                    },
                ],
                "priority": 100,
            }
        ],
    },
    "clouded-focus": {
        "name": "Clouded Focus",
        "description": "Your hearing and scent sharpen to precise senses within 20 feet, but you can't sense anything farther away.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "clouded-focus",
                "operations": [
                    {
                        "type": "modifySenses",
                        "senseModifications": {
                            "hearing": {"precision": "precise", "range": 20},
                            "tremorsense": {"precision": "precise", "range": 20},
                            "scent": {"precision": "precise", "range": 20},
                            "all": {"maxRange": 20},
                        },
                    }
                ],
                "priority": 100,
            }
        ],
    },
    "thousand-visions": {
        "name": "Thousand Visions",
        "description": "You ignore concealment within 30 feet; beyond that your senses are imprecise.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "thousand-visions",
                "operations": [
                    {
                        "type": "modifyActionQualification",
                        "qualifications": {"seek": {"ignoreConcealment": True}},
                        "range": 30,
                    },
                    {
                        "type": "modifySenses",
                        "senseModifications": {"all": {"maxRange": 30, "beyondIsImprecise": True}},
                    },
                ],
                "priority": 100,
            }
        ],
    },
    "deep-darkness": {
        "name": "Deep Darkness",
        "description": "The lighting at the creature's position is always greater magical darkness.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "deep-darkness",
                "operations": [
                    {
                        "type": "modifyLighting",
                        "lightingLevel": "greaterMagicalDarkness",
                        "priority": 200,
                    }
                ],
                "priority": 100,
            }
        ],
    },
    "deployable-cover": {
        "name": "Deployable Cover",
        "description": "Grants standard cover against attacks from the north to a creature that has Taken Cover.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "deployable-cover",
                "operations": [
                    {
                        "type": "provideCover",
                        "state": "standard",
                        "blockedEdges": ["north"],
                        "requiresTakeCover": True,
                        "autoCoverBehavior": "replace",
                    }
                ],
                "priority": 100,
            }
        ],
    },
    "consecrate": {
        "name": "Consecrate",
        "description": "Undead in the consecrated area see everyone else as concealed.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "consecrate",
                "predicate": ["self:trait:undead"],
                "operations": [
                    {
                        "type": "overrideVisibility",
                        "state": "concealed",
                        "direction": "from",
                        "observers": "all",
                    }
                ],
                "priority": 100,
            }
        ],
    },
    "obscuring-mist": {
        "name": "Obscuring Mist",
        "description": "A 20-foot cloud of mist: creatures on opposite sides of its edge are concealed from each other.",
        "rules": [
            {
                "key": RULE_ELEMENT_KEY,
                "slug": "obscuring-mist",
                "operations": [
                    {
                        "type": "auraVisibility",
                        "auraRadius": 20,
                        "insideOutsideState": "concealed",
                        "outsideInsideState": "concealed",
                        "sourceExempt": False,
                    }
                ],
                "priority": 100,
            }
        ],
    },
}


def list_presets() -> List[Dict[str, str]]:
    return [
        {"key": key, "name": preset["name"], "description": preset["description"]}
        for key, preset in PRESETS.items()
    ]


def get_preset(key: str) -> Optional[Dict[str, Any]]:
    preset = PRESETS.get(key)
    return copy.deepcopy(preset) if preset is not None else None


def build_preset_item(key: str, item_id: Optional[str] = None) -> Optional[EffectItem]:
    """An effect item for a preset, ready to attach to a token."""
    preset = get_preset(key)
    if preset is None:
        return None
    return EffectItem(
        id=item_id or f"{key}-{uuid.uuid4().hex[:8]}",
        name=preset["name"],
        slug=key,
        rules=preset["rules"],
    )
