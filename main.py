import os
import logging
from contextlib import asynccontextmanager
from typing import List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Body, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from database import KeyValueStore, FORMS_DATA_DIR, SAVED_FORMS_KEY
from editor import FormEditor, FieldIndexError, FieldConfigError, ReorderError
from preview import PreviewSession, DerivedFieldError
from schemas import FieldType, ValidationRule, RULE_PRESETS

# --- Config ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def create_editor() -> FormEditor:
    """Read the saved form collection once and hand back the editing state."""
    return FormEditor(KeyValueStore(FORMS_DATA_DIR), SAVED_FORMS_KEY)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.editor = create_editor()
    yield


app = FastAPI(title="Form Builder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Helpers ---

def get_editor(request: Request) -> FormEditor:
    return request.app.state.editor


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def get_saved_or_404(editor: FormEditor, form_id: str):
    saved = editor.get_saved_form(form_id)
    if saved is None:
        raise HTTPException(status_code=404, detail="Form not found")
    return saved


def preview_payload(session: PreviewSession) -> Dict[str, Any]:
    return {
        "values": jsonable_encoder(session.values),
        "derived": session.engine.derived_indices,
        "formula_errors": session.formula_errors,
    }


# --- Models ---
class AddFieldRequest(BaseModel):
    type: FieldType

class ReorderRequest(BaseModel):
    oldIndex: int
    newIndex: int

class SaveFormRequest(BaseModel):
    name: str

class ValuesRequest(BaseModel):
    values: List[Any] = []

class SetValueRequest(BaseModel):
    index: int
    value: Any = None
    values: List[Any] = []


# --- Routes ---
@app.get("/")
def read_root():
    return {"message": "Form Builder API running"}


@app.get("/api/rule-presets")
def rule_presets():
    return {"presets": [dump(rule) for rule in RULE_PRESETS]}


@app.get("/api/form/current")
def current_form(editor: FormEditor = Depends(get_editor)):
    return dump(editor.current_form)


@app.post("/api/form/current/fields", status_code=201)
def add_field(payload: AddFieldRequest, editor: FormEditor = Depends(get_editor)):
    field = editor.add_field(payload.type)
    return {"index": len(editor.current_form.fields) - 1, "field": dump(field)}


@app.patch("/api/form/current/fields/{index}")
def update_field(index: int, partial: Dict[str, Any] = Body(...), editor: FormEditor = Depends(get_editor)):
    try:
        field = editor.update_field(index, partial)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": [err["msg"] for err in e.errors()]})
    return dump(field)


@app.put("/api/form/current/fields/{index}")
def commit_field(index: int, config: Dict[str, Any] = Body(...), editor: FormEditor = Depends(get_editor)):
    try:
        field = editor.commit_field(index, config)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except FieldConfigError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": [err["msg"] for err in e.errors()]})
    return dump(field)


@app.delete("/api/form/current/fields/{index}")
def delete_field(index: int, editor: FormEditor = Depends(get_editor)):
    try:
        editor.delete_field(index)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return dump(editor.current_form)


@app.post("/api/form/current/fields/{index}/validations")
def add_validation(index: int, rule: ValidationRule, editor: FormEditor = Depends(get_editor)):
    try:
        field = editor.add_validation(index, rule)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return dump(field)


@app.delete("/api/form/current/fields/{index}/validations/{rule_type}")
def remove_validation(index: int, rule_type: str, editor: FormEditor = Depends(get_editor)):
    try:
        field = editor.remove_validation(index, rule_type)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return dump(field)


@app.post("/api/form/current/reorder")
def reorder_fields(payload: ReorderRequest, editor: FormEditor = Depends(get_editor)):
    try:
        editor.reorder_fields(payload.oldIndex, payload.newIndex)
    except FieldIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReorderError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return dump(editor.current_form)


@app.post("/api/form/current/reset")
def reset_current_form(editor: FormEditor = Depends(get_editor)):
    editor.reset_current_form()
    return dump(editor.current_form)


@app.post("/api/forms", status_code=201)
def save_form(payload: SaveFormRequest, editor: FormEditor = Depends(get_editor)):
    saved = editor.save_form(payload.name)
    if saved is None:
        raise HTTPException(status_code=400, detail="Form name is required")
    return dump(saved)


@app.get("/api/forms")
def list_forms(editor: FormEditor = Depends(get_editor)):
    result = []
    for f in editor.list_saved_forms():
        item = {
            "id": f.id,
            "name": f.name,
            "createdAt": f.createdAt,
            "field_count": len(f.form_schema.fields),
        }
        result.append(item)
    return {"forms": result}


@app.get("/api/forms/{form_id}")
def get_form(form_id: str, editor: FormEditor = Depends(get_editor)):
    return dump(get_saved_or_404(editor, form_id))


@app.get("/api/forms/{form_id}/preview")
def load_preview(form_id: str, editor: FormEditor = Depends(get_editor)):
    schema = editor.load_form_for_preview(form_id)
    if schema is None or not schema.is_loaded:
        raise HTTPException(status_code=404, detail="Form not found")
    session = PreviewSession(schema)
    return {"form": dump(schema), **preview_payload(session)}


@app.post("/api/forms/{form_id}/preview")
def update_preview(form_id: str, payload: ValuesRequest, editor: FormEditor = Depends(get_editor)):
    session = PreviewSession(get_saved_or_404(editor, form_id).form_schema)
    session.update(payload.values)
    return preview_payload(session)


@app.post("/api/forms/{form_id}/preview/value")
def set_preview_value(form_id: str, payload: SetValueRequest, editor: FormEditor = Depends(get_editor)):
    session = PreviewSession(get_saved_or_404(editor, form_id).form_schema)
    session.update(payload.values)
    try:
        session.set_value(payload.index, payload.value)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DerivedFieldError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return preview_payload(session)


@app.post("/api/forms/{form_id}/submit")
def submit_form(form_id: str, payload: ValuesRequest, editor: FormEditor = Depends(get_editor)):
    session = PreviewSession(get_saved_or_404(editor, form_id).form_schema)
    result = session.submit(payload.values)
    if not result.accepted:
        raise HTTPException(status_code=422, detail={"errors": result.errors})
    logger.info("Accepted submission for form %s", form_id)
    return {"status": "ok", "values": jsonable_encoder(result.values)}
