import os, json, time, uuid, logging, threading
from typing import Callable, Dict, Optional

from flask import Flask, jsonify, request, g, session, has_request_context
from flask_cors import CORS
from flask_limiter import Limiter
from sqlalchemy import text

from psiagenda.persistence.db import get_session
from psiagenda.persistence.repositories import AccessTokenRepository, ServiceRepository
from psiagenda.services.checkout import (
    CheckoutConfig,
    CheckoutController,
    CheckoutError,
    CheckoutState,
    ServiceNotFound,
)
from psiagenda.services.confirmation import PaymentConfirmation
from psiagenda.services.fulfillment import FulfillmentError, FulfillmentOrchestrator
from psiagenda.services.offer_timer import MappingStore, OfferTimer
from psiagenda.services.reservations import SlotReservationBook
from psiagenda.services.validation import CheckoutForm, CheckoutValidationError, merge_checkout_config


# ====== JSON logger ======
def _json_log_format(record: logging.LogRecord) -> str:
    base = {
        "ts": int(time.time() * 1000),
        "level": record.levelname,
        "msg": record.getMessage(),
        "logger": record.name,
    }
    if has_request_context():
        rid = getattr(g, "request_id", None)
        if rid:
            base["request_id"] = rid
        base["path"] = request.path
        base["method"] = request.method
        base["remote_ip"] = request.headers.get("X-Forwarded-For", request.remote_addr)
    if record.exc_info:
        base["exc_info"] = True
    return json.dumps(base, ensure_ascii=False)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return _json_log_format(record)


def _install_json_logging(level: str) -> None:
    root = logging.getLogger()
    if any(isinstance(h.formatter, JsonLogFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root.addHandler(handler)
    root.setLevel(level)


# ====== sessões de checkout em memória ======
class CheckoutSessionStore:
    """
    session_id -> CheckoutController. Cada controller tem seu próprio lock.
    Sessões encerradas (finished_at preenchido) saem depois de finished_ttl segundos.
    """

    def __init__(self, finished_ttl: float = 900.0, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._items: Dict[str, CheckoutController] = {}
        self.finished_ttl = finished_ttl
        self.clock = clock

    def _prune(self) -> None:
        now = self.clock()
        expired = [
            sid for sid, ctl in self._items.items()
            if ctl.session.finished_at is not None and now - ctl.session.finished_at >= self.finished_ttl
        ]
        for sid in expired:
            del self._items[sid]

    def add(self, controller: CheckoutController) -> str:
        with self._lock:
            self._prune()
            self._items[controller.session.id] = controller
        return controller.session.id

    def get(self, session_id: str) -> Optional[CheckoutController]:
        with self._lock:
            self._prune()
            return self._items.get(session_id)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._items.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _client_key() -> str:
    return request.headers.get("X-Forwarded-For", request.remote_addr or "local")


def create_app(
    *,
    controller_factory: Optional[Callable[[str], CheckoutController]] = None,
    confirmation: Optional[PaymentConfirmation] = None,
    config: Optional[dict] = None,
) -> Flask:
    """
    Fábrica do app. Os testes injetam controller_factory/confirmation com
    gateways falsos; em produção tudo sai das variáveis de ambiente.
    """
    app = Flask(__name__)
    app.secret_key = os.getenv("FLASK_SECRET_KEY", "dev-secret-change-me")
    app.config.update(config or {})

    _install_json_logging(os.getenv("LOGLEVEL", "INFO"))
    log = app.logger

    # ===== CORS / Rate limit =====
    allowed_origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()]
    if allowed_origins:
        CORS(app, resources={r"/*": {"origins": allowed_origins}}, supports_credentials=True)

    limiter = Limiter(
        key_func=_client_key,
        app=app,
        default_limits=[os.getenv("RATE_LIMIT_DEFAULT", "60 per minute")],
        storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
    )

    checkout_config = CheckoutConfig.from_env()
    reservations = SlotReservationBook(ttl_seconds=checkout_config.reservation_minutes * 60)
    if controller_factory is None:
        def controller_factory(service_id: str) -> CheckoutController:
            return CheckoutController(service_id, config=checkout_config, reservations=reservations)
    if confirmation is None:
        # webhook que agenda também converte a reserva do horário
        confirmation = PaymentConfirmation(
            fulfillment=FulfillmentOrchestrator(reservations=reservations if checkout_config.reserve_slots else None)
        )

    sessions = CheckoutSessionStore(finished_ttl=float(os.getenv("CHECKOUT_SESSION_TTL_SECONDS", "900")))
    services = ServiceRepository()
    app.extensions["checkout_sessions"] = sessions
    app.extensions["slot_reservations"] = reservations

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]

    @app.after_request
    def _echo_request_id(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    def _session_or_404(session_id: str):
        controller = sessions.get(session_id)
        if controller is None:
            return None, (jsonify({"error": "Sessão de checkout não encontrada"}), 404)
        return controller, None

    # ===== checkout =====
    @app.post("/checkout/<service_id>")
    @limiter.limit(lambda: os.getenv("RATE_LIMIT_CHECKOUT", "10 per minute"))
    def checkout_submit(service_id: str):
        data = request.get_json(silent=True) or {}
        controller = controller_factory(service_id)
        try:
            controller.submit(CheckoutForm.from_dict(data))
        except CheckoutValidationError as e:
            return jsonify({"state": "FormEntry", "errors": e.errors, "message": str(e)}), 422
        except ServiceNotFound as e:
            return jsonify({"error": str(e)}), 404
        except FulfillmentError as e:
            log.exception("Falha no agendamento após pagamento aprovado: %s", e)
            sessions.add(controller)
            body = controller.to_dict()
            body["error"] = str(e)
            return jsonify(body), 500

        if controller.state is CheckoutState.FORM_ENTRY:
            # gateway recusou criar a cobrança; o formulário volta com a mensagem
            return jsonify(controller.to_dict()), 502
        sid = sessions.add(controller)
        body = controller.to_dict()
        if controller.state is CheckoutState.AWAITING_CONFIRMATION:
            body["poll_url"] = f"/checkout/sessions/{sid}"
            body["poll_interval_seconds"] = controller.config.poll_interval_seconds
        return jsonify(body), 201

    @app.get("/checkout/sessions/<session_id>")
    def checkout_status(session_id: str):
        controller, err = _session_or_404(session_id)
        if err:
            return err
        try:
            controller.poll_if_due()
        except FulfillmentError as e:
            log.exception("Falha no agendamento após pagamento aprovado: %s", e)
            body = controller.to_dict()
            body["error"] = str(e)
            return jsonify(body), 500
        return jsonify(controller.to_dict()), 200

    @app.delete("/checkout/sessions/<session_id>")
    def checkout_cancel(session_id: str):
        controller, err = _session_or_404(session_id)
        if err:
            return err
        controller.cancel()
        sessions.discard(session_id)
        return jsonify(controller.to_dict()), 200

    @app.post("/checkout/sessions/<session_id>/retry")
    def checkout_retry(session_id: str):
        controller, err = _session_or_404(session_id)
        if err:
            return err
        try:
            controller.reset()
        except CheckoutError as e:
            return jsonify({"error": str(e)}), 409
        return jsonify(controller.to_dict()), 200

    @app.post("/checkout/sessions/<session_id>/copy-pix")
    def checkout_copy_pix(session_id: str):
        controller, err = _session_or_404(session_id)
        if err:
            return err
        try:
            code = controller.copy_pix_code()
        except CheckoutError as e:
            return jsonify({"error": str(e)}), 409
        return jsonify({"code": code, "copied": True}), 200

    @app.get("/checkout/<service_id>/timer")
    def checkout_timer(service_id: str):
        service = services.obter(service_id)
        if service is None:
            return jsonify({"error": f"Serviço não encontrado: {service_id}"}), 404
        timer_cfg = merge_checkout_config(service.checkout_config)["timer"]
        if not timer_cfg.get("enabled"):
            return jsonify({"enabled": False}), 200
        timer = OfferTimer(MappingStore(session))
        timer.start(service.id, int(timer_cfg.get("minutes") or 15))
        remaining = timer.remaining_seconds(service.id)
        return jsonify({
            "enabled": True,
            "remaining_seconds": remaining,
            "display": OfferTimer.format_remaining(remaining),
            "text": timer_cfg.get("text"),
            "bgcolor": timer_cfg.get("bgcolor"),
            "textcolor": timer_cfg.get("textcolor"),
            "sticky": timer_cfg.get("sticky"),
        }), 200

    # ===== webhooks de pagamento =====
    @app.post("/pagamentos/webhook/<gateway>")
    @limiter.exempt
    def payment_webhook(gateway: str):
        payload = request.get_json(silent=True, force=True) or {}
        log.info("[webhook] gateway=%s raw=%s", gateway, str(payload)[:800])
        try:
            out = confirmation.handle_webhook(gateway, payload, headers=dict(request.headers), body=request.get_data())
        except Exception as e:
            # o gateway reenviaria sem parar; a reconciliação cobre o que falhou aqui
            log.exception("Falha ao processar webhook %s: %s", gateway, e)
            out = {"ok": False, "error": "internal_error"}
        return jsonify(out), 200

    # ===== agendamento por token =====
    @app.get("/agendamentos/<token>")
    def appointment_lookup(token: str):
        email = request.args.get("email", "")
        apt = AccessTokenRepository().obter_agendamento(token, email)
        if apt is None:
            return jsonify({"error": "Agendamento não encontrado"}), 404
        return jsonify({
            "id": apt.id,
            "client_name": apt.client_name,
            "appointment_date": apt.appointment_date.isoformat(),
            "appointment_time": apt.appointment_time,
            "duration_minutes": apt.duration_minutes,
            "session_type": apt.session_type,
            "status": apt.status,
            "payment_status": apt.payment_status,
            "virtual_room_link": apt.virtual_room_link,
        }), 200

    @app.route("/health")
    def health():
        checks = {"db": "ok"}
        try:
            with get_session() as db:
                db.execute(text("SELECT 1"))
        except Exception:
            log.exception("Health check do banco falhou")
            checks["db"] = "fail"
        status = 200 if checks["db"] == "ok" else 500
        return jsonify({
            "status": "ok" if status == 200 else "degraded",
            "checks": checks,
            "checkout_sessions": len(sessions),
        }), status

    return app


app = create_app()
