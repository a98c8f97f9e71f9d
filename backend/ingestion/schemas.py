"""Target form definitions for the mapping step."""

from typing import Dict, List

from pydantic import BaseModel, Field

from backend.core.models import FormType


class FormFieldSpec(BaseModel):
    name: str
    label: str
    kind: str = "text"  # text, date, number, select, textarea, list
    required: bool = False
    options: List[str] = Field(default_factory=list)


class FormSchema(BaseModel):
    form_type: FormType
    label: str
    fields: List[FormFieldSpec]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    def get(self, name: str) -> FormFieldSpec:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(f"Unknown field '{name}' for form '{self.form_type.value}'")

    def label_for(self, name: str) -> str:
        return self.get(name).label


LEGAL_TEXT_TYPES = ["loi", "decret", "arrete", "ordonnance", "circulaire", "instruction", "decision"]

# Types that must carry an official number
NUMBERED_TEXT_TYPES = ["loi", "decret", "ordonnance"]

LEGAL_TEXT_SCHEMA = FormSchema(
    form_type=FormType.LEGAL,
    label="Texte juridique",
    fields=[
        FormFieldSpec(name="title", label="Titre", required=True),
        FormFieldSpec(name="number", label="Numéro", kind="number"),
        FormFieldSpec(name="date", label="Date", kind="date", required=True),
        FormFieldSpec(name="type", label="Type de texte", kind="select", required=True, options=LEGAL_TEXT_TYPES),
        FormFieldSpec(name="institution", label="Institution", required=True),
        FormFieldSpec(name="jo_number", label="Numéro du Journal Officiel"),
        FormFieldSpec(name="jo_date", label="Date du Journal Officiel", kind="date"),
        FormFieldSpec(name="wilaya", label="Wilaya"),
        FormFieldSpec(name="sector", label="Secteur"),
        FormFieldSpec(name="description", label="Objet", kind="textarea"),
        FormFieldSpec(name="content", label="Contenu", kind="textarea"),
        FormFieldSpec(name="language", label="Langue", kind="select", options=["ar", "fr", "mixed"]),
    ],
)

PROCEDURE_SCHEMA = FormSchema(
    form_type=FormType.PROCEDURE,
    label="Procédure administrative",
    fields=[
        FormFieldSpec(name="title", label="Intitulé", required=True),
        FormFieldSpec(name="description", label="Description", kind="textarea"),
        FormFieldSpec(name="institution", label="Administration", required=True),
        FormFieldSpec(name="category", label="Catégorie", kind="select"),
        FormFieldSpec(name="duration", label="Délai"),
        FormFieldSpec(name="cost", label="Coût"),
        FormFieldSpec(name="required_documents", label="Pièces à fournir", kind="list"),
        FormFieldSpec(name="steps", label="Étapes", kind="list", required=True),
        FormFieldSpec(name="tags", label="Mots-clés", kind="list"),
    ],
)

FORM_SCHEMAS: Dict[FormType, FormSchema] = {
    FormType.LEGAL: LEGAL_TEXT_SCHEMA,
    FormType.PROCEDURE: PROCEDURE_SCHEMA,
}


def get_schema(form_type) -> FormSchema:
    """Look up a schema by ``FormType`` or its string value."""
    return FORM_SCHEMAS[FormType(form_type)]
