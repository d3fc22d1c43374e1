"""
Screen and catalog schemas.

A screen (record resource) declares its form fields, which of them are
searched, which one carries the date used for range filtering, which
catalogs must be loaded with it and whether the staff-directory lookup and
the duration calculation apply.

Catalog kinds are tagged variants (simple / coded / directory), each with its
own field set and required fields, looked up by kind in ``CATALOGS``.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .duration import check_date, check_time, try_compute_hours
from .errors import ValidationError

_FORMAT_CHECKS = {'date': check_date, 'time': check_time}


# ── Field specs ───────────────────────────────────────────────

@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    required: bool = True
    kind: str = 'text'          # text | date | time | choice | catalog | number | textarea
    catalog: Optional[str] = None
    choices: Tuple[str, ...] = ()
    default: Any = ''
    computed: bool = False      # filled by the controller, not typed by the user


@dataclass(frozen=True)
class DurationSpec:
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    target: str

    @property
    def inputs(self) -> Tuple[str, str, str, str]:
        return (self.start_date, self.start_time, self.end_date, self.end_time)

    def compute(self, draft: Mapping[str, Any]) -> Optional[float]:
        return try_compute_hours(*(draft.get(f) or '' for f in self.inputs))


@dataclass(frozen=True)
class ScreenSchema:
    resource: str
    label: str
    fields: Tuple[FieldSpec, ...]
    search_fields: Tuple[str, ...]
    date_field: str
    catalogs: Tuple[str, ...] = ()
    directory: Optional[str] = None     # table used for the cedula lookup
    duration: Optional[DurationSpec] = None
    order_by: str = '-created_at'

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def editable_fields(self) -> List[str]:
        return [f.name for f in self.fields if not f.computed]

    @property
    def categorical_fields(self) -> Dict[str, str]:
        """field name → catalog kind"""
        return {f.name: f.catalog for f in self.fields if f.catalog}

    @property
    def load_tables(self) -> Tuple[str, ...]:
        """Catalog tables fetched alongside the records on every reload."""
        tables = list(self.catalogs)
        if self.directory and self.directory not in tables:
            tables.append(self.directory)
        return tuple(tables)

    def get_field(self, name: str) -> Optional[FieldSpec]:
        return next((f for f in self.fields if f.name == name), None)

    def empty_draft(self) -> Dict[str, Any]:
        return {f.name: f.default for f in self.fields}

    def draft_from(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        draft = {}
        for f in self.fields:
            value = record.get(f.name)
            draft[f.name] = f.default if value is None else value
        return draft

    def payload(self, draft: Mapping[str, Any]) -> Dict[str, Any]:
        """Fields persisted for a draft (computed ones included, audit fields not)."""
        return {name: draft.get(name) for name in self.field_names if name in draft}

    def missing_required(self, draft: Mapping[str, Any]) -> List[str]:
        missing = []
        for f in self.fields:
            if not f.required or f.computed:
                continue
            value = draft.get(f.name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(f.name)
        return missing

    def validate(self, draft: Mapping[str, Any],
                 catalogs: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
                 previous: Optional[Mapping[str, Any]] = None) -> None:
        """Raise ValidationError for empty required fields, bad choices, malformed
        dates or times, absence hours that cannot be computed, or
        categorical values not present as an active catalog entry.

        On update (*previous* given) only categorical values that changed are
        checked, so records keep values of since-deactivated entries.
        """
        missing = self.missing_required(draft)
        if missing:
            raise ValidationError(fields=missing)
        for f in self.fields:
            if f.choices and draft.get(f.name) not in f.choices:
                raise ValidationError(
                    f"Valor no permitido para '{f.label}': {draft.get(f.name)!r}",
                    fields=[f.name],
                )
            check = _FORMAT_CHECKS.get(f.kind)
            if check is not None and draft.get(f.name):
                try:
                    check(draft.get(f.name))
                except ValueError as e:
                    raise ValidationError(f"{f.label}: {e}", fields=[f.name])
        if self.duration is not None and self.duration.compute(draft) is None:
            raise ValidationError(
                "No se pudieron calcular las horas de ausencia",
                fields=[self.duration.target],
            )
        if catalogs is None:
            return
        for name, kind in self.categorical_fields.items():
            value = draft.get(name)
            if not value:
                continue
            if previous is not None and previous.get(name) == value:
                continue
            entries = catalogs.get(kind)
            if entries is None:
                continue
            if not any(e.get('nombre') == value and e.get('activo', True) for e in entries):
                label = self.get_field(name).label
                raise ValidationError(
                    f"'{value}' no es una opción activa de {label}", fields=[name],
                )

    def describe(self) -> Dict[str, Any]:
        """JSON-ready descriptor used by clients to build forms."""
        return {
            'resource': self.resource,
            'label': self.label,
            'fields': [
                {
                    'name': f.name, 'label': f.label, 'required': f.required,
                    'kind': f.kind, 'catalog': f.catalog, 'choices': list(f.choices),
                    'default': f.default, 'computed': f.computed,
                }
                for f in self.fields
            ],
            'search_fields': list(self.search_fields),
            'date_field': self.date_field,
            'catalogs': list(self.catalogs),
            'directory': self.directory,
        }


# ── Catalog variants ──────────────────────────────────────────

@dataclass(frozen=True)
class CatalogSchema:
    kind: str
    label: str
    variant: str                            # simple | coded | directory
    fields: Tuple[str, ...]
    required: Tuple[str, ...]
    search_fields: Tuple[str, ...] = ('nombre',)
    order_by: str = 'nombre'
    # no date filtering, lookup or duration on catalog screens
    date_field: Optional[str] = None
    directory: Optional[str] = None
    duration: Optional[DurationSpec] = None
    load_tables: Tuple[str, ...] = ()

    @property
    def resource(self) -> str:
        return self.kind

    @property
    def categorical_fields(self) -> Dict[str, str]:
        return {}

    def empty_draft(self) -> Dict[str, Any]:
        draft = {f: '' for f in self.fields}
        draft['activo'] = True
        return draft

    def draft_from(self, entry: Mapping[str, Any]) -> Dict[str, Any]:
        draft = {f: entry.get(f) or '' for f in self.fields}
        draft['activo'] = bool(entry.get('activo', True))
        return draft

    def payload(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Only the fields of this variant plus ``activo``."""
        out = {f: data.get(f, '') for f in self.fields if f in data}
        if 'activo' in data:
            out['activo'] = bool(data['activo'])
        return out

    def missing_required(self, data: Mapping[str, Any]) -> List[str]:
        return [f for f in self.required if not str(data.get(f) or '').strip()]

    def validate(self, data: Mapping[str, Any], catalogs=None, previous=None) -> None:
        missing = self.missing_required(data)
        if missing:
            raise ValidationError(fields=missing)

    def describe(self) -> Dict[str, Any]:
        return {
            'kind': self.kind, 'label': self.label, 'variant': self.variant,
            'fields': list(self.fields), 'required': list(self.required),
        }


_SIMPLE_FIELDS = ('nombre',)
_CODED_FIELDS = ('codigo', 'nombre')
_DIRECTORY_FIELDS = ('cedula', 'nombre', 'cargo', 'dependencia')


def _simple(kind: str, label: str) -> CatalogSchema:
    return CatalogSchema(kind, label, 'simple', _SIMPLE_FIELDS, ('nombre',))


CATALOG_LIST: Tuple[CatalogSchema, ...] = (
    _simple('tipos_novedad', 'Tipos de Novedad'),
    CatalogSchema('diagnosticos', 'Diagnósticos', 'coded', _CODED_FIELDS, ('codigo', 'nombre')),
    _simple('tipos_incapacidad', 'Tipos de Incapacidad'),
    _simple('sintomas', 'Síntomas'),
    _simple('antecedentes_salud', 'Antecedentes de Salud'),
    CatalogSchema('funcionarios', 'Funcionarios', 'directory', _DIRECTORY_FIELDS, ('cedula', 'nombre')),
    _simple('tipos_at', 'Tipos de AT'),
    _simple('tipos_lesion', 'Tipos de Lesión'),
    _simple('partes_cuerpo', 'Partes del Cuerpo'),
    _simple('cargos', 'Cargos'),
    _simple('dependencias', 'Dependencias'),
)

CATALOGS: Dict[str, CatalogSchema] = {c.kind: c for c in CATALOG_LIST}

DIRECTORY_TABLE = 'funcionarios'


# ── Screens ───────────────────────────────────────────────────

TIPOS_PLANTA = ('Docente', 'Administrativo', 'Aprendiz')
SALIDA_CHOICES = ('Sí', 'No')

ACCIDENTES_TRABAJO = ScreenSchema(
    resource='accidentes_trabajo',
    label='Accidentes de Trabajo',
    fields=(
        FieldSpec('cedula', 'Número de Cédula'),
        FieldSpec('nombre', 'Nombre Completo'),
        FieldSpec('cargo', 'Cargo'),
        FieldSpec('dependencia', 'Dependencia'),
        FieldSpec('tipo_at', 'Tipo de AT', kind='catalog', catalog='tipos_at'),
        FieldSpec('tipo_lesion', 'Tipo de Lesión', kind='catalog', catalog='tipos_lesion'),
        FieldSpec('parte_cuerpo_afectada', 'Parte del Cuerpo Afectada', kind='catalog',
                  catalog='partes_cuerpo'),
        FieldSpec('fecha', 'Fecha', kind='date'),
        FieldSpec('hora', 'Hora', kind='time'),
    ),
    search_fields=('cedula', 'nombre', 'tipo_at', 'tipo_lesion', 'dependencia'),
    date_field='fecha',
    catalogs=('tipos_at', 'tipos_lesion', 'partes_cuerpo'),
    directory=DIRECTORY_TABLE,
)

ENFERMERIA = ScreenSchema(
    resource='enfermeria',
    label='Enfermería',
    fields=(
        FieldSpec('cedula', 'Número de Cédula'),
        FieldSpec('nombre', 'Nombre Completo'),
        FieldSpec('cargo', 'Cargo'),
        FieldSpec('dependencia', 'Dependencia'),
        FieldSpec('sintomas', 'Síntomas', kind='catalog', catalog='sintomas'),
        FieldSpec('antecedentes_salud', 'Antecedentes de Salud', kind='catalog',
                  catalog='antecedentes_salud'),
        FieldSpec('salida', 'Salida', kind='choice', choices=SALIDA_CHOICES, default='No'),
        FieldSpec('observaciones', 'Observaciones', required=False, kind='textarea'),
        FieldSpec('fecha', 'Fecha', kind='date'),
    ),
    search_fields=('cedula', 'nombre', 'cargo', 'dependencia', 'sintomas'),
    date_field='fecha',
    catalogs=('cargos', 'dependencias', 'sintomas', 'antecedentes_salud'),
    directory=DIRECTORY_TABLE,
)

NOVEDADES = ScreenSchema(
    resource='novedades',
    label='Novedades',
    fields=(
        FieldSpec('cedula', 'Número de Cédula'),
        FieldSpec('nombre', 'Nombre Completo'),
        FieldSpec('tipo_planta', 'Tipo de Planta', kind='choice', choices=TIPOS_PLANTA,
                  default='Docente'),
        FieldSpec('dependencia', 'Dependencia', kind='catalog', catalog='dependencias'),
        FieldSpec('fecha_inicio', 'Fecha Inicio', kind='date'),
        FieldSpec('hora_inicio', 'Hora Inicio', kind='time'),
        FieldSpec('fecha_fin', 'Fecha Fin', kind='date'),
        FieldSpec('hora_fin', 'Hora Fin', kind='time'),
        FieldSpec('horas_ausencia', 'Horas de Ausencia', kind='number', default=0.0,
                  computed=True),
        FieldSpec('tipo_novedad', 'Tipo de Novedad', kind='catalog', catalog='tipos_novedad',
                  default='Permiso'),
        FieldSpec('observacion', 'Observación', required=False, kind='textarea'),
    ),
    search_fields=('cedula', 'nombre', 'tipo_novedad', 'dependencia'),
    date_field='fecha_inicio',
    catalogs=('dependencias', 'tipos_novedad'),
    duration=DurationSpec('fecha_inicio', 'hora_inicio', 'fecha_fin', 'hora_fin',
                          target='horas_ausencia'),
)

SCREENS: Dict[str, ScreenSchema] = {
    s.resource: s for s in (ACCIDENTES_TRABAJO, ENFERMERIA, NOVEDADES)
}

RECORD_TABLES = tuple(SCREENS)
CATALOG_TABLES = tuple(CATALOGS)


def get_screen(resource: str) -> ScreenSchema:
    try:
        return SCREENS[resource]
    except KeyError:
        raise ValueError(f"Unknown resource: {resource}")


def get_catalog(kind: str) -> CatalogSchema:
    try:
        return CATALOGS[kind]
    except KeyError:
        raise ValueError(f"Unknown catalog: {kind}")
