from typing import Dict, List, Optional

from cleanmatch.models import ChecklistItem, ChecklistTemplate
from cleanmatch.services.errors import StoreValidationError


def _items(*entries: tuple) -> List[ChecklistItem]:
    return [ChecklistItem(key=key, label=label, required=required) for key, label, required in entries]


CLEANING_CHECKLISTS: Dict[str, ChecklistTemplate] = {
    "MOVE_IN": ChecklistTemplate(
        service_type="MOVE_IN",
        label="Move-in cleaning",
        items=_items(
            ("floor", "Floors (mop/wax)", True),
            ("window", "Windows and glass", True),
            ("bathroom", "Bathroom (toilet/sink/tiles)", True),
            ("kitchen", "Kitchen (sink/stove/hood)", True),
            ("veranda", "Veranda", True),
            ("aircon", "Air conditioner filter", False),
            ("closet", "Built-in closets and storage", False),
            ("light", "Lights and switches", False),
            ("entrance", "Entrance and shoe cabinet", True),
        ),
    ),
    "MOVE_OUT": ChecklistTemplate(
        service_type="MOVE_OUT",
        label="Move-out cleaning",
        items=_items(
            ("floor", "Floors (mop/wax)", True),
            ("window", "Windows and glass", True),
            ("bathroom", "Bathroom (toilet/sink/tiles)", True),
            ("kitchen", "Kitchen (sink/stove/hood)", True),
            ("veranda", "Veranda", True),
            ("wallpaper", "Wallpaper stain removal", False),
            ("closet", "Built-in closets and storage", False),
            ("entrance", "Entrance and shoe cabinet", True),
            ("trash", "Leftover waste disposal", False),
        ),
    ),
    "FULL": ChecklistTemplate(
        service_type="FULL",
        label="Full cleaning",
        items=_items(
            ("floor", "Floors", True),
            ("window", "Windows and glass", True),
            ("bathroom", "Bathroom", True),
            ("kitchen", "Kitchen", True),
            ("veranda", "Veranda", True),
            ("furniture", "Furniture surfaces and dust", True),
            ("aircon", "Air conditioner filter", False),
            ("light", "Lights and switches", False),
        ),
    ),
    "OFFICE": ChecklistTemplate(
        service_type="OFFICE",
        label="Office cleaning",
        items=_items(
            ("floor", "Floors (carpet/tile)", True),
            ("window", "Windows and glass", True),
            ("desk", "Desks and meeting rooms", True),
            ("bathroom", "Bathroom", True),
            ("kitchen", "Pantry and kitchen", False),
            ("aircon", "Air conditioner filter", False),
            ("trash", "Waste disposal", True),
        ),
    ),
    "STORE": ChecklistTemplate(
        service_type="STORE",
        label="Store cleaning",
        items=_items(
            ("floor", "Floors", True),
            ("window", "Windows, glass and signage", True),
            ("bathroom", "Bathroom", True),
            ("kitchen", "Kitchen and prep area", False),
            ("exterior", "Exterior and entrance", False),
            ("trash", "Waste disposal", True),
        ),
    ),
    "CONSTRUCTION": ChecklistTemplate(
        service_type="CONSTRUCTION",
        label="Post-construction cleaning",
        items=_items(
            ("dust", "Construction dust removal", True),
            ("floor", "Floors (cement/adhesive removal)", True),
            ("window", "Windows (sticker removal)", True),
            ("bathroom", "Bathroom", True),
            ("kitchen", "Kitchen", True),
            ("veranda", "Veranda", True),
            ("paint", "Paint mark removal", False),
            ("entrance", "Entrance and hallway", True),
        ),
    ),
    "AIRCON": ChecklistTemplate(
        service_type="AIRCON",
        label="Air conditioner cleaning",
        items=_items(
            ("filter", "Filter wash", True),
            ("evaporator", "Evaporator coil wash", True),
            ("drain", "Drain line", True),
            ("cover", "Outer cover and panels", True),
            ("test", "Operation test", True),
        ),
    ),
    "CARPET": ChecklistTemplate(
        service_type="CARPET",
        label="Carpet cleaning",
        items=_items(
            ("vacuum", "Vacuum", True),
            ("stain", "Stain removal", True),
            ("wash", "Steam/shampoo wash", True),
            ("dry", "Drying", True),
            ("deodorize", "Deodorizing", False),
        ),
    ),
    "EXTERIOR": ChecklistTemplate(
        service_type="EXTERIOR",
        label="Exterior cleaning",
        items=_items(
            ("wall", "Exterior walls", True),
            ("window", "Outside windows", True),
            ("parking", "Parking area", False),
            ("entrance", "Building entrance and lobby", True),
            ("roof", "Rooftop", False),
        ),
    ),
}


def get_checklist_template(service_type: str) -> Optional[ChecklistTemplate]:
    return CLEANING_CHECKLISTS.get(service_type)


def list_checklist_templates() -> List[ChecklistTemplate]:
    return list(CLEANING_CHECKLISTS.values())


def validate_checklist(service_type: str, checklist: Dict[str, bool]) -> Dict[str, bool]:
    """Reject checklist keys that the service type's template does not define."""
    if not checklist:
        return {}
    template = get_checklist_template(service_type)
    if template is None:
        raise StoreValidationError(f"No checklist template for service type {service_type}")
    allowed = {item.key for item in template.items}
    unknown = sorted(key for key in checklist if key not in allowed)
    if unknown:
        raise StoreValidationError(f"Unknown checklist items for {service_type}: {', '.join(unknown)}")
    return {key: bool(value) for key, value in checklist.items()}
