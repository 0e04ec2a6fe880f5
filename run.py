from panel import create_app

app = create_app()

if __name__ == '__main__':
    # Host '0.0.0.0' makes the API reachable from the network
    app.run(host='0.0.0.0', port=5000)
