from cozegate.core.gateway import main

main()
