# barberpro/services/email_service.py
import logging

import resend

from barberpro.core import config

if not config.RESEND_API_KEY:
    logging.warning("RESEND_API_KEY não está configurada no .env! O envio de e-mails falhará.")
else:
    resend.api_key = config.RESEND_API_KEY
    logging.info("Serviço de e-mail (Resend) inicializado.")

FROM_ADDRESS = f"Barber APP <{config.SENDER_EMAIL_ADDRESS}>"
EMAIL_TYPES = ("welcome_manual", "welcome_self")


# --- Função HELPER INTERNA para o CSS Base ---
def _get_base_css() -> str:
    return """
        body { font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif; background-color: #f4f4f4; color: #333; margin: 0; padding: 0; }
        .container { max-width: 600px; margin: 20px auto; background-color: #ffffff; padding: 30px; border-radius: 8px; }
        h1 { color: #7C3AED; font-size: 24px; border-bottom: 2px solid #eee; padding-bottom: 10px; }
        p { line-height: 1.6; margin-bottom: 15px; }
        .detail { background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0; }
        .footer { text-align: center; margin-top: 20px; font-size: 12px; color: #888; }
        .button {
            display: inline-block;
            background-color: #7C3AED;
            color: #ffffff;
            padding: 12px 24px;
            text-decoration: none;
            border-radius: 6px;
            font-weight: bold;
        }
    """


def _wrap_html(body: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html lang="pt-BR">
    <head>
        <meta charset="UTF-8">
        <style>{_get_base_css()}</style>
    </head>
    <body>
        <div class="container">
            {body}
        </div>
    </body>
    </html>
    """


def _send(to_email: str, subject: str, html_content: str, label: str) -> bool:
    """Envia pelo Resend. Nunca levanta: devolve False e registra o erro."""
    try:
        if not config.RESEND_API_KEY:
            raise RuntimeError("Chave RESEND_API_KEY não configurada")
        resend.Emails.send({
            "from": FROM_ADDRESS,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        })
        logging.info(f"E-mail de {label} enviado com sucesso para {to_email}.")
        return True
    except Exception as e:
        logging.error(f"ERRO RESEND: Falha ao enviar e-mail de {label} para {to_email}: {e}")
        return False


def send_welcome_manual_email(email: str, name: str, password: str = None) -> bool:
    """Conta criada pela equipe: envia login e (se houver) senha."""
    password_line = f"<p><strong>Senha:</strong> {password}</p>" if password else ""
    html_content = _wrap_html(f"""
            <h1>Bem-vindo à NextLevel! 🚀</h1>
            <p>Olá <strong>{name}</strong>,</p>
            <p>Sua conta foi criada manualmente por nossa equipe. Aqui estão seus dados de acesso:</p>
            <div class="detail">
                <p><strong>Login:</strong> {email}</p>
                {password_line}
            </div>
            <p>Acesse sua barbearia agora mesmo:</p>
            <a href="{config.FRONTEND_BASE_URL}/login" class="button">Acessar Painel</a>
            <div class="footer">Se você não solicitou este acesso, ignore este email.</div>
    """)
    return _send(email, "Bem-vindo à NextLevel - Suas Credenciais", html_content, "BOAS-VINDAS (manual)")


def send_welcome_self_email(email: str, name: str) -> bool:
    html_content = _wrap_html(f"""
            <h1 style="color: #2DD4BF;">Bem-vindo à NextLevel! 🎉</h1>
            <p>Olá <strong>{name}</strong>,</p>
            <p>Sua conta foi criada com sucesso! Estamos muito felizes em ter você conosco.</p>
            <p>O próximo passo é configurar os detalhes da sua barbearia para começar a receber agendamentos.</p>
            <a href="{config.FRONTEND_BASE_URL}/admin/setup" class="button" style="background-color: #2DD4BF; color: #000000;">Configurar Barbearia</a>
            <div class="footer">Se precisar de ajuda, entre em contato com nosso suporte.</div>
    """)
    return _send(email, "Bem-vindo à NextLevel - Configure sua Barbearia", html_content, "BOAS-VINDAS (cadastro)")


def send_staff_credentials_email(email: str, name: str, password: str) -> bool:
    html_content = _wrap_html(f"""
            <h1>Bem-vindo! 🚀</h1>
            <p>Olá <strong>{name}</strong>,</p>
            <p>Sua conta foi criada. Aqui estão seus dados de acesso:</p>
            <div class="detail">
                <p><strong>Login:</strong> {email}</p>
                <p><strong>Senha:</strong> {password}</p>
            </div>
            <p>Acesse o sistema:</p>
            <a href="{config.FRONTEND_BASE_URL}/login" class="button">Acessar Painel</a>
    """)
    return _send(email, "Bem-vindo à Equipe - Suas Credenciais", html_content, "CREDENCIAIS (equipe)")


def send_password_recovery_email(email: str, recovery_link: str) -> bool:
    html_content = _wrap_html(f"""
            <h1 style="text-align: center;">Recuperar Senha</h1>
            <p style="text-align: center;">Você solicitou a redefinição de sua senha.</p>
            <div style="text-align: center; margin: 30px 0;">
                <a href="{recovery_link}" class="button">Redefinir Minha Senha</a>
            </div>
            <p style="text-align: center; color: #666; font-size: 12px;">Ou copie este link: {recovery_link}</p>
            <div class="footer">Se não foi você, ignore este email.</div>
    """)
    return _send(email, "Recuperação de Senha - Barber APP", html_content, "RECUPERAÇÃO DE SENHA")
