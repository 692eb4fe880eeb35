from keyshop import create_app

app = create_app()


@app.shell_context_processor
def make_shell_context():
    services = app.extensions['keyshop']
    return {
        "services": services,
        "ledger": services.ledger,
        "pool": services.pool,
        "lifecycle": services.lifecycle,
    }


if __name__ == '__main__':
    app.run(debug=True)
