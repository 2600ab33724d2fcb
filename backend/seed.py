"""
Catalog seeding for CumpliRos.

    python seed.py [--templates-dir PATH]

1. Ensures the default jurisdiction (Rosario, Santa Fe) exists
2. Inserts the built-in Rosario starters (gastronomia, comercio) that are still missing
3. Upserts templates from templates/jurisdictions/<code>/*.json by templateKey
4. Assigns the default jurisdiction to organisations that have none
"""
import os
import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine import ObligationType, Periodicity, TemplateSeverity
from database import async_session_maker, close_db
from models import ObligationTemplate, ChecklistTemplateItem, Jurisdiction, Organization, utcnow
from services.jurisdictions import JurisdictionsService

logger = logging.getLogger("cumpliros.seed")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "jurisdictions"

_ROSARIO_PORTAL = {"links": [{"url": "https://www.rosario.gob.ar/inicio/habilitaciones", "title": "Portal de Habilitaciones Rosario"}]}

BUILTIN_TEMPLATES: List[Dict[str, Any]] = [
    {
        "templateKey": "rosario.gastronomia.habilitacion_comercial",
        "rubric": "gastronomia",
        "title": "Habilitación Comercial Municipal",
        "description": "Habilitación municipal obligatoria para operar un establecimiento gastronómico en Rosario",
        "type": "PERMIT",
        "defaultPeriodicity": "ANNUAL",
        "defaultDueRule": "Renovar antes de fecha de vencimiento",
        "requiresReview": True,
        "requiredEvidenceCount": 1,
        "severity": "CRITICAL",
        "references": _ROSARIO_PORTAL,
        "checklist": [
            {"description": "Completar formulario de solicitud", "isRequired": True},
            {"description": "Adjuntar plano del local aprobado", "isRequired": True},
            {"description": "Presentar comprobante de tasa municipal", "isRequired": True},
            {"description": "Adjuntar certificado de bomberos vigente", "isRequired": True},
            {"description": "Presentar carnet sanitario de empleados", "isRequired": False},
        ],
    },
    {
        "templateKey": "rosario.gastronomia.inspeccion_bromatologia",
        "rubric": "gastronomia",
        "title": "Inspección Bromatológica",
        "description": "Control sanitario periódico obligatorio por parte de Bromatología Municipal",
        "type": "INSPECTION",
        "defaultPeriodicity": "SEMIANNUAL",
        "defaultDueRule": "Coordinar con antelación",
        "requiresReview": False,
        "requiredEvidenceCount": 1,
        "severity": "HIGH",
        "checklist": [
            {"description": "Verificar limpieza general del establecimiento", "isRequired": True},
            {"description": "Controlar temperaturas de heladeras y freezers", "isRequired": True},
            {"description": "Revisar fechas de vencimiento de productos", "isRequired": True},
            {"description": "Verificar carnets sanitarios vigentes", "isRequired": True},
        ],
    },
    {
        "templateKey": "rosario.gastronomia.tasa_seguridad_higiene",
        "rubric": "gastronomia",
        "title": "Tasa de Seguridad e Higiene (TSeH)",
        "description": "Tributo municipal mensual sobre la facturación del establecimiento",
        "type": "TAX",
        "defaultPeriodicity": "MONTHLY",
        "defaultDueRule": "Vence el día 15 de cada mes",
        "requiresReview": False,
        "requiredEvidenceCount": 1,
        "severity": "HIGH",
        "checklist": [
            {"description": "Calcular base imponible del período", "isRequired": True},
            {"description": "Generar boleta de pago", "isRequired": True},
            {"description": "Realizar pago en banco habilitado o home banking", "isRequired": True},
            {"description": "Archivar comprobante de pago", "isRequired": True},
        ],
    },
    {
        "templateKey": "rosario.gastronomia.certificado_bomberos",
        "rubric": "gastronomia",
        "title": "Certificado de Bomberos",
        "description": "Certificado de condiciones contra incendio emitido por Bomberos Voluntarios",
        "type": "PERMIT",
        "defaultPeriodicity": "ANNUAL",
        "defaultDueRule": "Solicitar inspección con 30 días de anticipación",
        "requiresReview": True,
        "requiredEvidenceCount": 1,
        "severity": "CRITICAL",
        "checklist": [
            {"description": "Solicitar turno de inspección", "isRequired": True},
            {"description": "Verificar matafuegos cargados y vigentes", "isRequired": True},
            {"description": "Revisar señalización de emergencia", "isRequired": True},
            {"description": "Presentar plano de evacuación", "isRequired": False},
        ],
    },
    {
        "templateKey": "rosario.comercio.habilitacion_comercial",
        "rubric": "comercio",
        "title": "Habilitación Comercial Municipal",
        "description": "Habilitación municipal para operar un comercio en Rosario",
        "type": "PERMIT",
        "defaultPeriodicity": "ANNUAL",
        "defaultDueRule": "Renovar antes de fecha de vencimiento",
        "requiresReview": True,
        "requiredEvidenceCount": 1,
        "severity": "CRITICAL",
        "references": _ROSARIO_PORTAL,
        "checklist": [
            {"description": "Completar formulario de solicitud", "isRequired": True},
            {"description": "Adjuntar plano del local", "isRequired": True},
            {"description": "Presentar comprobante de tasa municipal", "isRequired": True},
            {"description": "Adjuntar certificado de bomberos vigente", "isRequired": True},
        ],
    },
    {
        "templateKey": "rosario.comercio.ingresos_brutos",
        "rubric": "comercio",
        "title": "Declaración Jurada Ingresos Brutos",
        "description": "Declaración mensual del impuesto provincial sobre ingresos brutos",
        "type": "DECLARATION",
        "defaultPeriodicity": "MONTHLY",
        "defaultDueRule": "Según terminación de CUIT",
        "requiresReview": False,
        "requiredEvidenceCount": 1,
        "severity": "HIGH",
        "checklist": [
            {"description": "Calcular base imponible", "isRequired": True},
            {"description": "Completar declaración en sistema API", "isRequired": True},
            {"description": "Generar VEP de pago", "isRequired": True},
            {"description": "Abonar impuesto", "isRequired": True},
        ],
    },
    {
        "templateKey": "rosario.comercio.seguro_responsabilidad_civil",
        "rubric": "comercio",
        "title": "Seguro de Responsabilidad Civil",
        "description": "Seguro que cubre daños a terceros en el local comercial",
        "type": "INSURANCE",
        "defaultPeriodicity": "ANNUAL",
        "defaultDueRule": "Renovar antes de vencimiento de póliza",
        "requiresReview": False,
        "requiredEvidenceCount": 1,
        "severity": "MEDIUM",
        "checklist": [
            {"description": "Solicitar cotización", "isRequired": True},
            {"description": "Revisar cobertura", "isRequired": True},
            {"description": "Abonar prima", "isRequired": True},
            {"description": "Archivar póliza", "isRequired": True},
        ],
    },
]


async def upsert_template(db: AsyncSession, jurisdiction_id: str, data: Dict[str, Any]) -> ObligationTemplate:
    """Create or refresh one template by templateKey; the checklist is replaced wholesale."""
    fields = {
        "jurisdiction_id": jurisdiction_id,
        "rubric": data["rubric"].strip().lower(),
        "title": data["title"],
        "description": data.get("description"),
        "type": ObligationType(data["type"]),
        "default_periodicity": Periodicity(data["defaultPeriodicity"]),
        "default_due_rule": data.get("defaultDueRule"),
        "requires_review": bool(data.get("requiresReview", False)),
        "required_evidence_count": int(data.get("requiredEvidenceCount", 0)),
        "severity": TemplateSeverity(data.get("severity", "MEDIUM")),
        "references": data.get("references"),
        "is_active": True,
    }

    result = await db.execute(
        select(ObligationTemplate).where(ObligationTemplate.template_key == data["templateKey"])
    )
    template = result.scalar_one_or_none()
    if template is None:
        template = ObligationTemplate(template_key=data["templateKey"], version=1, **fields)
        db.add(template)
        await db.flush()
    else:
        for name, value in fields.items():
            setattr(template, name, value)
        template.version = (template.version or 1) + 1
        template.changelog = f"Updated on {utcnow().isoformat()}"

    checklist = data.get("checklist") or []
    if checklist:
        await db.execute(delete(ChecklistTemplateItem).where(ChecklistTemplateItem.template_id == template.id))
        for index, item in enumerate(checklist):
            db.add(ChecklistTemplateItem(
                template_id=template.id,
                description=item["description"],
                order=index,
                is_required=bool(item.get("isRequired", True)),
            ))
    logger.info(f"  template {data['templateKey']} v{template.version}")
    return template


async def load_templates_from_json(db: AsyncSession, templates_dir: Path = TEMPLATES_DIR) -> int:
    if not templates_dir.is_dir():
        logger.info(f"No template directory at {templates_dir}")
        return 0

    loaded = 0
    for jurisdiction_dir in sorted(p for p in templates_dir.iterdir() if p.is_dir()):
        code = jurisdiction_dir.name.lower()
        jurisdiction = (await db.execute(
            select(Jurisdiction).where(Jurisdiction.code == code)
        )).scalar_one_or_none()
        if not jurisdiction:
            logger.warning(f"Jurisdiction not found for code: {code}; skipping {jurisdiction_dir}")
            continue

        for path in sorted(jurisdiction_dir.glob("*.json")):
            content = json.loads(path.read_text(encoding="utf-8"))
            for entry in content if isinstance(content, list) else [content]:
                await upsert_template(db, jurisdiction.id, entry)
                loaded += 1
        logger.info(f"Templates loaded for {jurisdiction.name}")
    return loaded


async def seed_builtin_templates(db: AsyncSession, jurisdiction_id: str) -> int:
    """Insert the built-in starters whose key is not in the catalog yet; never overwrites."""
    existing = set((await db.execute(
        select(ObligationTemplate.template_key).where(
            ObligationTemplate.template_key.in_([t["templateKey"] for t in BUILTIN_TEMPLATES])
        )
    )).scalars().all())
    created = 0
    for entry in BUILTIN_TEMPLATES:
        if entry["templateKey"] not in existing:
            await upsert_template(db, jurisdiction_id, entry)
            created += 1
    return created


async def seed_catalog(db: AsyncSession, templates_dir: Path = TEMPLATES_DIR) -> Dict[str, int]:
    default = await JurisdictionsService(db).get_or_create_default()
    builtin = await seed_builtin_templates(db, default.id)
    from_files = await load_templates_from_json(db, templates_dir)

    assigned = await db.execute(
        update(Organization)
        .where(Organization.jurisdiction_id.is_(None))
        .values(jurisdiction_id=default.id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return {"fromFiles": from_files, "builtin": builtin, "organizationsAssigned": assigned.rowcount or 0}


async def main(templates_dir: Path) -> None:
    try:
        async with async_session_maker() as db:
            summary = await seed_catalog(db, templates_dir)
        logger.info(f"Seed completed: {summary}")
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    parser = argparse.ArgumentParser(description="Seed the CumpliRos template catalog")
    parser.add_argument("--templates-dir", type=Path, default=TEMPLATES_DIR)
    args = parser.parse_args()
    try:
        asyncio.run(main(args.templates_dir))
    except Exception:
        logger.exception("Seed failed")
        sys.exit(1)
