from proxy_gateway.run import main

main()
