"""Installer spec documents.

An installer spec is a YAML document describing one self-hosted app: its
minimum hardware, DNS records, wizard questions and the ordered shell steps
that install it. Steps without an ``if:`` guard form the install phase; guarded
steps form the SSL phase.
"""

import re
from dataclasses import dataclass, field

import yaml

from .errors import SpecError
from .utils import parse_size_to_gb, parse_size_to_mb

DEFAULT_CPUS = 1
DEFAULT_RAM_MB = 1024
DEFAULT_DISK_GB = 20
DEFAULT_DOMAIN_HINT = "Example: app.your-domain.com"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class MinSpec:
    cpu: int = 0
    ram_mb: int = 0
    disk_gb: int = 0


@dataclass(frozen=True)
class DNSRecordTemplate:
    type: str = ""
    name: str = ""
    content: str = ""
    ttl: int = 0
    proxied: bool | None = None


@dataclass(frozen=True)
class WizardChoice:
    name: str
    default: object = None


@dataclass(frozen=True)
class WizardQuestion:
    id: str
    name: str
    type: str = "text"
    required: bool = False
    default: object = None
    choices: tuple[WizardChoice, ...] = ()

    def to_dict(self) -> dict:
        data = {"id": self.id, "name": self.name, "type": self.type, "required": self.required}
        if self.default is not None:
            data["default"] = self.default
        if self.choices:
            data["choices"] = [
                {"name": c.name, **({"default": c.default} if c.default is not None else {})}
                for c in self.choices
            ]
        return data


@dataclass(frozen=True)
class TTYAutoAnswer:
    value: str = ""
    wait_for: str = ""
    wait_for_regex: bool = False
    timeout_ms: int = 0
    delay_ms: int = 0


@dataclass(frozen=True)
class TTYSpec:
    enabled: bool = False
    auto_answer: tuple[TTYAutoAnswer, ...] = ()


@dataclass(frozen=True)
class Step:
    name: str = ""
    condition: str = ""
    run: str = ""
    sleep: str = ""
    log: str = ""
    target: str = ""
    tty: TTYSpec = field(default_factory=TTYSpec)

    @property
    def is_conditional(self) -> bool:
        return bool(self.condition.strip())


@dataclass(frozen=True)
class InstallerSpec:
    app: str
    description: str = ""
    os: str = ""
    domain_hint: str = ""
    min_spec: MinSpec = field(default_factory=MinSpec)
    providers: tuple[str, ...] = ()
    dns_records: tuple[DNSRecordTemplate, ...] = ()
    wizard_questions: tuple[WizardQuestion, ...] = ()
    steps: tuple[Step, ...] = ()


_TOP_KEYS = {"app", "description", "os", "domain_hint", "min_spec", "providers", "dns", "wizard", "steps"}
_MIN_SPEC_KEYS = {"cpu", "ram", "disk"}
_DNS_KEYS = {"records"}
_RECORD_KEYS = {"type", "name", "content", "ttl", "proxied"}
_WIZARD_KEYS = {"domain_hint", "steps"}
_WIZARD_STEPS_KEYS = {"application"}
_WIZARD_APP_KEYS = {"custom_questions"}
_QUESTION_KEYS = {"id", "name", "type", "default", "required", "choices"}
_CHOICE_KEYS = {"name", "default"}
_STEP_KEYS = {"name", "in", "if", "run", "tty", "sleep", "log"}
_TTY_KEYS = {"auto_answer"}
_ANSWER_KEYS = {"value", "wait_for", "wait_for_regex", "timeout_ms", "delay_ms"}


def _mapping(value, where: str, allowed: set[str]) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SpecError(f"{where}: expected a mapping, got {type(value).__name__}")
    unknown = sorted(set(value) - allowed)
    if unknown:
        raise SpecError(f"{where}: unknown field(s) {', '.join(map(str, unknown))}")
    return value


def _sequence(value, where: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SpecError(f"{where}: expected a list, got {type(value).__name__}")
    return value


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _int(value, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise SpecError(f"{where}: expected an integer, got {value!r}")
    return value


def _size(value, parser, where: str) -> int:
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        raise SpecError(f"{where}: invalid size value")
    try:
        return parser(text)
    except ValueError as e:
        raise SpecError(f"{where}: {e}") from e


def slugify(text: str) -> str:
    slug = _NON_ALNUM.sub("-", text.strip().lower()).strip("-")
    return slug or "q"


def _parse_tty(raw, where: str) -> TTYSpec:
    if raw is None or raw is False:
        return TTYSpec()
    if raw is True:
        return TTYSpec(enabled=True)
    data = _mapping(raw, where, _TTY_KEYS)
    answers = []
    for i, item in enumerate(_sequence(data.get("auto_answer"), f"{where}.auto_answer")):
        a = _mapping(item, f"{where}.auto_answer[{i}]", _ANSWER_KEYS)
        answers.append(
            TTYAutoAnswer(
                value=_text(a.get("value")),
                wait_for=_text(a.get("wait_for")),
                wait_for_regex=bool(a.get("wait_for_regex", False)),
                timeout_ms=_int(a.get("timeout_ms"), f"{where}.auto_answer[{i}].timeout_ms"),
                delay_ms=_int(a.get("delay_ms"), f"{where}.auto_answer[{i}].delay_ms"),
            )
        )
    return TTYSpec(enabled=True, auto_answer=tuple(answers))


def _parse_step(raw, index: int) -> Step:
    where = f"steps[{index}]"
    data = _mapping(raw, where, _STEP_KEYS)
    return Step(
        name=_text(data.get("name")),
        condition=_text(data.get("if")),
        run=_text(data.get("run")),
        sleep=_text(data.get("sleep")),
        log=_text(data.get("log")),
        target=_text(data.get("in")),
        tty=_parse_tty(data.get("tty"), f"{where}.tty"),
    )


def _parse_question(raw, index: int) -> WizardQuestion:
    where = f"wizard.steps.application.custom_questions[{index}]"
    q = _mapping(raw, where, _QUESTION_KEYS)
    name = _text(q.get("name"))
    qtype = _text(q.get("type")).strip().lower() or "text"
    if qtype not in ("boolean", "text", "choice"):
        raise SpecError(f"{where}.type: must be boolean, text or choice, got {qtype!r}")
    choices = tuple(
        WizardChoice(name=_text(c.get("name")), default=c.get("default"))
        for c in (
            _mapping(item, f"{where}.choices[{j}]", _CHOICE_KEYS)
            for j, item in enumerate(_sequence(q.get("choices"), f"{where}.choices"))
        )
    )
    return WizardQuestion(
        id=_text(q.get("id")).strip() or slugify(name),
        name=name,
        type=qtype,
        required=bool(q.get("required", False)),
        default=q.get("default"),
        choices=choices,
    )


def load_spec(data: str | bytes) -> InstallerSpec:
    """Parse an installer spec document.

    :raises SpecError: on empty input, YAML errors, unknown fields or bad values
    """
    if isinstance(data, bytes):
        data = data.decode()
    if not data or not data.strip():
        raise SpecError("empty installer spec")
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise SpecError(f"invalid YAML: {e}") from e

    doc = _mapping(raw, "spec", _TOP_KEYS)
    hw = _mapping(doc.get("min_spec"), "min_spec", _MIN_SPEC_KEYS)
    dns = _mapping(doc.get("dns"), "dns", _DNS_KEYS)
    wizard = _mapping(doc.get("wizard"), "wizard", _WIZARD_KEYS)
    wizard_steps = _mapping(wizard.get("steps"), "wizard.steps", _WIZARD_STEPS_KEYS)
    application = _mapping(
        wizard_steps.get("application"), "wizard.steps.application", _WIZARD_APP_KEYS
    )

    records = []
    for i, item in enumerate(_sequence(dns.get("records"), "dns.records")):
        r = _mapping(item, f"dns.records[{i}]", _RECORD_KEYS)
        proxied = r.get("proxied")
        records.append(
            DNSRecordTemplate(
                type=_text(r.get("type")),
                name=_text(r.get("name")),
                content=_text(r.get("content")),
                ttl=_int(r.get("ttl"), f"dns.records[{i}].ttl"),
                proxied=None if proxied is None else bool(proxied),
            )
        )

    return InstallerSpec(
        app=_text(doc.get("app")).strip(),
        description=_text(doc.get("description")).strip(),
        os=_text(doc.get("os")),
        domain_hint=(_text(doc.get("domain_hint")) or _text(wizard.get("domain_hint"))).strip(),
        min_spec=MinSpec(
            cpu=_int(hw.get("cpu"), "min_spec.cpu"),
            ram_mb=_size(hw.get("ram"), parse_size_to_mb, "min_spec.ram"),
            disk_gb=_size(hw.get("disk"), parse_size_to_gb, "min_spec.disk"),
        ),
        providers=tuple(_text(p) for p in _sequence(doc.get("providers"), "providers")),
        dns_records=tuple(records),
        wizard_questions=tuple(
            _parse_question(q, i)
            for i, q in enumerate(_sequence(application.get("custom_questions"), "custom_questions"))
        ),
        steps=tuple(_parse_step(s, i) for i, s in enumerate(_sequence(doc.get("steps"), "steps"))),
    )
