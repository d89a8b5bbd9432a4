"""
Default stack written by ``stackvisor init``: PostgreSQL, n8n, Ollama and
Open WebUI on one network, with one persistent volume per stateful service.
"""

STACK_MANIFEST = """\
# Local AI stack. Values are read from .env (copy .env.example to start).
networks:
  ai-stack: {}

volumes:
  postgres_data: {}
  n8n_data: {}
  ollama_data: {}
  open_webui_data: {}

services:
  postgres:
    image: postgres:16-alpine
    restart: unless-stopped
    environment:
      POSTGRES_USER: ${POSTGRES_USER}
      POSTGRES_PASSWORD: ${POSTGRES_PASSWORD}
      POSTGRES_DB: ${POSTGRES_DB}
      TZ: ${TZ}
    volumes:
      - postgres_data:/var/lib/postgresql/data
    networks: [ai-stack]
    healthcheck:
      test: ["CMD-SHELL", "pg_isready -U ${POSTGRES_USER} -d ${POSTGRES_DB}"]
      interval: 5s
      timeout: 5s
      retries: 10
      start_period: 30s

  n8n:
    image: n8nio/n8n:latest
    restart: unless-stopped
    ports:
      - "5678:5678"
    environment:
      DB_TYPE: postgresdb
      DB_POSTGRESDB_HOST: postgres
      DB_POSTGRESDB_PORT: "5432"
      DB_POSTGRESDB_DATABASE: ${POSTGRES_DB}
      DB_POSTGRESDB_USER: ${POSTGRES_USER}
      DB_POSTGRESDB_PASSWORD: ${POSTGRES_PASSWORD}
      N8N_BASIC_AUTH_ACTIVE: "true"
      N8N_BASIC_AUTH_USER: ${N8N_BASIC_AUTH_USER}
      N8N_BASIC_AUTH_PASSWORD: ${N8N_BASIC_AUTH_PASSWORD}
      N8N_HOST: ${N8N_HOST}
      N8N_PORT: "5678"
      N8N_PROTOCOL: ${N8N_PROTOCOL}
      N8N_PROXY_HOPS: ${N8N_PROXY_HOPS}
      WEBHOOK_URL: ${WEBHOOK_URL}
      GENERIC_TIMEZONE: ${GENERIC_TIMEZONE}
      TZ: ${TZ}
      OLLAMA_HOST: http://ollama:11434
    volumes:
      - n8n_data:/home/node/.n8n
    networks: [ai-stack]
    depends_on:
      - postgres
    healthcheck:
      http: http://localhost:5678/healthz
      interval: 10s
      timeout: 5s
      retries: 6
      start_period: 60s

  ollama:
    image: ollama/ollama:latest
    restart: unless-stopped
    ports:
      - "11434:11434"
    volumes:
      - ollama_data:/root/.ollama
    networks: [ai-stack]
    healthcheck:
      test: ["CMD", "ollama", "list"]
      interval: 10s
      timeout: 5s
      retries: 6
      start_period: 20s

  open-webui:
    image: ghcr.io/open-webui/open-webui:main
    restart: unless-stopped
    ports:
      - "3000:8080"
    environment:
      OLLAMA_BASE_URL: http://ollama:11434
      WEBUI_SECRET_KEY: ${WEBUI_SECRET_KEY}
    volumes:
      - open_webui_data:/app/backend/data
    networks: [ai-stack]
    depends_on:
      - ollama
    healthcheck:
      http: http://localhost:3000/health
      interval: 10s
      timeout: 5s
      retries: 6
      start_period: 60s

# Public hostnames can also be listed here instead of TUNNEL_HOSTNAMES:
# x-tunnel:
#   routes:
#     n8n.example.com: http://localhost:5678
"""

ENV_EXAMPLE = """\
# Database
POSTGRES_USER=n8n
POSTGRES_PASSWORD=
POSTGRES_DB=n8n

# Workflow editor login
N8N_BASIC_AUTH_USER=admin
N8N_BASIC_AUTH_PASSWORD=

# Chat UI session signing key (any long random string)
WEBUI_SECRET_KEY=

GENERIC_TIMEZONE=UTC

# Externally visible URL of the workflow engine. Behind the tunnel use
# N8N_PROTOCOL=https, N8N_HOST=<public hostname> and N8N_PROXY_HOPS=1.
N8N_PROTOCOL=http
N8N_HOST=localhost
N8N_PROXY_HOPS=0
# WEBHOOK_URL=https://n8n.example.com/

# Tunnel (optional)
# TUNNEL_TOKEN=
# TUNNEL_HOSTNAMES=n8n.example.com=localhost:5678,chat.example.com=localhost:3000

# Supervisor
# STACKVISOR_RUNTIME=docker
# STACKVISOR_LOG_LEVEL=INFO
"""
